"""
AI Analysis Testbench
Flask Application Factory.

Usage:
    from testbench import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import json
import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_migrate import Migrate

from testbench.config import config
from testbench.models import db
from testbench.middleware.logging_config import configure_logging
from testbench.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    config_cls = config[config_name]
    # ProductionConfig validates required env vars on instantiation
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import models so Alembic can detect them ─────────────────────────
    from testbench.models import testing as _testing_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        db_uri = app.config["SQLALCHEMY_DATABASE_URI"]
        if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
            os.makedirs(os.path.dirname(db_uri[len("sqlite:///"):]) or ".", exist_ok=True)
        try:
            db.create_all()
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from testbench.blueprints.test_runs_bp import test_runs_bp

    app.register_blueprint(test_runs_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("run-suite")
    @click.argument("suite_file", type=click.Path(exists=True, dir_okay=False))
    @click.option("--user-id", default="cli", show_default=True, help="Owning user id.")
    def run_suite_cmd(suite_file, user_id):
        """Execute a test suite described by a JSON file (name, cases, metrics)."""
        from testbench.services.aggregator import MetricDefinition
        from testbench.services.orchestrator import TestCaseSpec, build_orchestrator

        with open(suite_file, encoding="utf-8") as fh:
            suite = json.load(fh)
        cases = [TestCaseSpec.from_dict(c) for c in suite.get("cases", [])]
        definitions = None
        if suite.get("metrics") is not None:
            definitions = [MetricDefinition.from_dict(d) for d in suite["metrics"]]

        run = build_orchestrator().run(
            suite.get("name") or os.path.basename(suite_file),
            suite.get("user_id", user_id),
            cases,
            metric_definitions=definitions,
        )
        summary = run.summary()
        click.echo(
            f"TestRun {run.id}: {summary['status']} "
            f"({summary['passed']} passed, {summary['failed']} failed, {summary['skipped']} skipped)"
        )

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "AI Analysis Testbench"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    return app
