"""
AI Analysis Testbench
Measurement Store — validation runs against AI analysis jobs.

Models:
    - TestRun:     named batch of test cases; run status is derived, never stored
    - TestResult:  one executed (ai_job, test_source) case with timing / cost / confidence
    - TestMetric:  one aggregated measurement per metric key, plus trend & threshold fields

Architecture ref:
    TestRun ──1:N──▶ TestResult
    TestRun ──1:N──▶ TestMetric
    Deleting a TestRun cascades to both.

Metric key: (metric_name, ai_job, time_period, user_id). Together with
collected_at it identifies one metric instance of a trend series.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import func

from testbench.models import db


# ── Constants ────────────────────────────────────────────────────────────

TEST_TYPES = {"file_upload", "url_analysis"}

RUN_TEST_TYPES = TEST_TYPES | {"mixed"}

RESULT_STATUSES = {"pending", "running", "passed", "failed", "skipped"}

TERMINAL_STATUSES = frozenset({"passed", "failed", "skipped"})

# Derived only (see derive_run_status)
RUN_STATUSES = {"running", "passed", "failed", "partial", "skipped"}

METRIC_TYPES = {"performance", "accuracy", "cost", "usage"}

AGGREGATION_TYPES = {"sum", "average", "min", "max", "count"}

TIME_PERIODS = {"test", "daily", "weekly", "monthly"}

TREND_DIRECTIONS = {"up", "down", "stable", "unknown"}

# Numeric TestResult columns a metric may aggregate, with their natural unit.
NUMERIC_RESULT_FIELDS = {
    "duration_ms": "ms",
    "memory_usage_mb": "MB",
    "api_calls_made": "calls",
    "tokens_used": "tokens",
    "estimated_cost": "USD",
    "confidence_score": "score",
}

# ── Result lifecycle transition guard ────────────────────────────────────
RESULT_TRANSITIONS = {
    "pending": ["running", "skipped"],
    "running": ["passed", "failed", "skipped"],
    "passed":  [],
    "failed":  [],
    "skipped": [],
}


def validate_result_transition(old_status, new_status):
    """Return True if TestResult status transition is valid."""
    return new_status in RESULT_TRANSITIONS.get(old_status, [])


def derive_run_status(statuses):
    """Derive the run-level status from the statuses of its results.

    failed   — any result failed
    passed   — every result passed (an empty run counts as passed)
    skipped  — every result skipped
    partial  — a mix of passed / skipped, nothing failed
    running  — at least one result is still pending or running
    """
    statuses = list(statuses)
    if any(s not in TERMINAL_STATUSES for s in statuses):
        return "running"
    if "failed" in statuses:
        return "failed"
    if all(s == "passed" for s in statuses):
        return "passed"
    if all(s == "skipped" for s in statuses):
        return "skipped"
    return "partial"


def _utcnow():
    return datetime.now(timezone.utc)


def _new_id():
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# TEST RUN
# ═════════════════════════════════════════════════════════════════════════════

class TestRun(db.Model):
    """
    A named batch of test cases executed together.

    Created by the orchestrator at run start and finalized (completed_at set)
    once every result and metric is written. Status, counts and progress are
    derived from the owned TestResult rows.
    """

    __tablename__ = "test_runs"
    __test__ = False  # not a pytest test class

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    user_id = db.Column(db.String(36), nullable=False, index=True, comment="User who executed the run")
    name = db.Column(db.String(255), nullable=False)
    test_type = db.Column(
        db.String(20), nullable=False, default="mixed",
        comment="file_upload | url_analysis | mixed",
    )
    configuration = db.Column(db.JSON, nullable=True, comment="Declared cases, metric definitions, options")
    warnings = db.Column(db.JSON, nullable=True, comment="Aggregation warnings reported at finalization")
    error_message = db.Column(db.Text, nullable=True, comment="Structural abort reason")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    results = db.relationship(
        "TestResult", back_populates="test_run",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="TestResult.created_at",
    )
    metrics = db.relationship(
        "TestMetric", back_populates="test_run",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="TestMetric.metric_name",
    )

    @property
    def is_finalized(self):
        return self.completed_at is not None

    def _status_counts(self):
        rows = (
            db.session.query(TestResult.status, func.count(TestResult.id))
            .filter(TestResult.test_run_id == self.id)
            .group_by(TestResult.status)
            .all()
        )
        return {status: count for status, count in rows}

    @property
    def status(self):
        counts = self._status_counts()
        return derive_run_status(s for s, n in counts.items() for _ in range(n))

    @property
    def duration_seconds(self):
        if not self.started_at or not self.completed_at:
            return None
        return int((self.completed_at - self.started_at).total_seconds())

    def summary(self):
        """Derived counters: totals per status, progress % and run status."""
        counts = self._status_counts()
        total = sum(counts.values())
        terminal = sum(n for s, n in counts.items() if s in TERMINAL_STATUSES)
        return {
            "total": total,
            "pending": counts.get("pending", 0),
            "running": counts.get("running", 0),
            "passed": counts.get("passed", 0),
            "failed": counts.get("failed", 0),
            "skipped": counts.get("skipped", 0),
            "progress": round(terminal / total * 100) if total else 100,
            "status": derive_run_status(s for s, n in counts.items() for _ in range(n)),
        }

    def to_dict(self, include_results=False, include_metrics=False):
        d = {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "test_type": self.test_type,
            "configuration": self.configuration,
            "warnings": self.warnings or [],
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "duration_seconds": self.duration_seconds,
            "is_finalized": self.is_finalized,
        }
        d.update(self.summary())
        if include_results:
            d["results"] = [r.to_dict() for r in self.results]
        if include_metrics:
            d["metrics"] = [m.to_dict() for m in self.metrics]
        return d

    def __repr__(self):
        return f"<TestRun {self.id} '{self.name}'>"


# ═════════════════════════════════════════════════════════════════════════════
# TEST RESULT
# ═════════════════════════════════════════════════════════════════════════════

class TestResult(db.Model):
    """
    One executed test case: a declared (ai_job, test_source, test_type) unit.

    Lifecycle: pending → running → passed | failed | skipped  (see RESULT_TRANSITIONS).
    Created in ``pending`` by the orchestrator; mutated only by the ResultRecorder.
    """

    __tablename__ = "test_results"
    __test__ = False
    __table_args__ = (
        db.CheckConstraint(
            "confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 1)",
            name="ck_test_results_confidence_range",
        ),
        db.Index("ix_test_results_run_job", "test_run_id", "ai_job"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    test_run_id = db.Column(
        db.String(36), db.ForeignKey("test_runs.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(db.String(36), nullable=False, index=True)
    test_type = db.Column(db.String(20), nullable=False, comment="file_upload | url_analysis")
    test_source = db.Column(db.String(500), nullable=False, comment="File path or URL")
    ai_job = db.Column(db.String(100), nullable=False, comment="e.g. transcription, object_detection")
    status = db.Column(
        db.String(20), nullable=False, default="pending", index=True,
        comment="pending | running | passed | failed | skipped",
    )
    pass_fail_reason = db.Column(db.Text, nullable=True)
    ai_output = db.Column(db.JSON, nullable=True)
    error_details = db.Column(db.JSON, nullable=True, comment="Only when status = failed")
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    duration_ms = db.Column(db.Integer, nullable=True, comment="completed_at - started_at")
    memory_usage_mb = db.Column(db.Float, nullable=True)
    api_calls_made = db.Column(db.Integer, nullable=True)
    tokens_used = db.Column(db.Integer, nullable=True)
    estimated_cost = db.Column(db.Float, nullable=True, comment="USD")
    confidence_score = db.Column(db.Float, nullable=True, comment="0.0–1.0")
    meta = db.Column("metadata", db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    test_run = db.relationship("TestRun", back_populates="results")

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "test_run_id": self.test_run_id,
            "user_id": self.user_id,
            "test_type": self.test_type,
            "test_source": self.test_source,
            "ai_job": self.ai_job,
            "status": self.status,
            "pass_fail_reason": self.pass_fail_reason,
            "ai_output": self.ai_output,
            "error_details": self.error_details,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "memory_usage_mb": self.memory_usage_mb,
            "api_calls_made": self.api_calls_made,
            "tokens_used": self.tokens_used,
            "estimated_cost": self.estimated_cost,
            "confidence_score": self.confidence_score,
            "metadata": self.meta,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<TestResult {self.id} {self.ai_job} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# TEST METRIC
# ═════════════════════════════════════════════════════════════════════════════

class TestMetric(db.Model):
    """
    One aggregated measurement for a metric key within a run.

    Written once by the MetricAggregator; the trend fields (comparison_value,
    percentage_change, trend_direction) and is_within_threshold are filled in
    together by the TrendAnalyzer right after creation.
    """

    __tablename__ = "test_metrics"
    __test__ = False
    __table_args__ = (
        db.UniqueConstraint(
            "test_run_id", "metric_name", "ai_job", "time_period",
            name="uq_test_metric_run_key",
        ),
        db.UniqueConstraint(
            "metric_name", "ai_job", "time_period", "user_id", "collected_at",
            name="uq_test_metric_series_instant",
        ),
        db.Index("ix_test_metrics_series", "metric_name", "ai_job", "time_period", "collected_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    test_run_id = db.Column(
        db.String(36), db.ForeignKey("test_runs.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(db.String(36), nullable=False, index=True)
    metric_type = db.Column(db.String(20), nullable=False, comment="performance | accuracy | cost | usage")
    metric_name = db.Column(db.String(100), nullable=False)
    ai_job = db.Column(db.String(100), nullable=False)
    metric_value = db.Column(db.Float, nullable=False)
    metric_unit = db.Column(db.String(50), nullable=True, comment="ms, MB, USD, ...")
    aggregation_type = db.Column(
        db.String(10), nullable=False, default="sum",
        comment="sum | average | min | max | count",
    )
    time_period = db.Column(
        db.String(10), nullable=False, default="test",
        comment="test | daily | weekly | monthly",
    )
    baseline_value = db.Column(db.Float, nullable=True)
    threshold_min = db.Column(db.Float, nullable=True)
    threshold_max = db.Column(db.Float, nullable=True)
    is_within_threshold = db.Column(db.Boolean, nullable=True, comment="NULL when no threshold declared")
    trend_direction = db.Column(db.String(10), nullable=True, comment="up | down | stable | unknown")
    comparison_value = db.Column(db.Float, nullable=True, comment="Previous metric_value of the same key")
    percentage_change = db.Column(db.Float, nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=True)
    collected_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    test_run = db.relationship("TestRun", back_populates="metrics")

    @property
    def key(self):
        return (self.metric_name, self.ai_job, self.time_period, self.user_id)

    def to_dict(self):
        return {
            "id": self.id,
            "test_run_id": self.test_run_id,
            "user_id": self.user_id,
            "metric_type": self.metric_type,
            "metric_name": self.metric_name,
            "ai_job": self.ai_job,
            "metric_value": self.metric_value,
            "metric_unit": self.metric_unit,
            "aggregation_type": self.aggregation_type,
            "time_period": self.time_period,
            "baseline_value": self.baseline_value,
            "threshold_min": self.threshold_min,
            "threshold_max": self.threshold_max,
            "is_within_threshold": self.is_within_threshold,
            "trend_direction": self.trend_direction,
            "comparison_value": self.comparison_value,
            "percentage_change": self.percentage_change,
            "metadata": self.meta,
            "collected_at": _iso(self.collected_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<TestMetric {self.metric_name}/{self.ai_job} = {self.metric_value}>"
