"""Test runs, results and metrics

Revision ID: 7e1a9c3b5d20
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "7e1a9c3b5d20"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ── test_runs ──
    op.create_table(
        "test_runs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("test_type", sa.String(20), nullable=False, server_default="mixed"),
        sa.Column("configuration", sa.JSON(), nullable=True),
        sa.Column("warnings", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── test_results ──
    op.create_table(
        "test_results",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "test_run_id",
            sa.String(36),
            sa.ForeignKey("test_runs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("user_id", sa.String(36), nullable=False, index=True),
        sa.Column("test_type", sa.String(20), nullable=False),
        sa.Column("test_source", sa.String(500), nullable=False),
        sa.Column("ai_job", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("pass_fail_reason", sa.Text(), nullable=True),
        sa.Column("ai_output", sa.JSON(), nullable=True),
        sa.Column("error_details", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("memory_usage_mb", sa.Float(), nullable=True),
        sa.Column("api_calls_made", sa.Integer(), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=True),
        sa.Column("estimated_cost", sa.Float(), nullable=True),
        sa.Column("confidence_score", sa.Float(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 1)",
            name="ck_test_results_confidence_range",
        ),
    )
    op.create_index("ix_test_results_run_job", "test_results", ["test_run_id", "ai_job"])

    # ── test_metrics ──
    op.create_table(
        "test_metrics",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "test_run_id",
            sa.String(36),
            sa.ForeignKey("test_runs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("user_id", sa.String(36), nullable=False, index=True),
        sa.Column("metric_type", sa.String(20), nullable=False),
        sa.Column("metric_name", sa.String(100), nullable=False),
        sa.Column("ai_job", sa.String(100), nullable=False),
        sa.Column("metric_value", sa.Float(), nullable=False),
        sa.Column("metric_unit", sa.String(50), nullable=True),
        sa.Column("aggregation_type", sa.String(10), nullable=False, server_default="sum"),
        sa.Column("time_period", sa.String(10), nullable=False, server_default="test"),
        sa.Column("baseline_value", sa.Float(), nullable=True),
        sa.Column("threshold_min", sa.Float(), nullable=True),
        sa.Column("threshold_max", sa.Float(), nullable=True),
        sa.Column("is_within_threshold", sa.Boolean(), nullable=True),
        sa.Column("trend_direction", sa.String(10), nullable=True),
        sa.Column("comparison_value", sa.Float(), nullable=True),
        sa.Column("percentage_change", sa.Float(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("collected_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "test_run_id", "metric_name", "ai_job", "time_period",
            name="uq_test_metric_run_key",
        ),
        sa.UniqueConstraint(
            "metric_name", "ai_job", "time_period", "user_id", "collected_at",
            name="uq_test_metric_series_instant",
        ),
    )
    op.create_index(
        "ix_test_metrics_series", "test_metrics",
        ["metric_name", "ai_job", "time_period", "collected_at"],
    )


def downgrade():
    op.drop_index("ix_test_metrics_series", table_name="test_metrics")
    op.drop_table("test_metrics")
    op.drop_index("ix_test_results_run_job", table_name="test_results")
    op.drop_table("test_results")
    op.drop_table("test_runs")
