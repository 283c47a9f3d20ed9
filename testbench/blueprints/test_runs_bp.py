"""Test runs blueprint — JSON surface over the test execution engine.

Endpoint groups
───────────────
  Catalog     GET    /ai-jobs                       AI job catalog
  Runs        POST   /test-runs                     Create + start a run
              GET    /test-runs                     List runs (user_id filter)
              GET    /test-runs/<id>                Run summary (derived status, progress)
              POST   /test-runs/<id>/cancel         Request cancellation
              DELETE /test-runs/<id>                Delete a finalized run
  Results     GET    /test-runs/<id>/results        Results (status filter)
  Metrics     GET    /test-runs/<id>/metrics        Metrics of a run
              GET    /metrics/history               Series for one metric key
              GET    /metrics/performance           Per-job performance rollup (hours window)
  Sources     GET    /test-sources                  Files under the files root + test URLs
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from testbench.blueprints import paginate_query
from testbench.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from testbench.integrations.analysis_gateway import AI_JOB_CATALOG
from testbench.models import db
from testbench.models.testing import RESULT_STATUSES, TestMetric, TestResult, TestRun
from testbench.services.aggregator import MetricDefinition
from testbench.services.orchestrator import (
    TestCaseSpec,
    build_orchestrator,
    cancel_run,
    execute_in_background,
    is_run_active,
)
from testbench.services.source_inventory import list_test_sources
from testbench.services.trend_analyzer import TrendAnalyzer
from testbench.utils.errors import E, api_error

logger = logging.getLogger(__name__)

test_runs_bp = Blueprint("test_runs", __name__, url_prefix="/api/v1")


# ── Error handlers ───────────────────────────────────────────────────────

@test_runs_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@test_runs_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    missing = isinstance(error.details, dict) and "required" in error.details.values()
    code = E.VALIDATION_REQUIRED if missing else E.VALIDATION_INVALID
    return api_error(code, str(error), status=422, details=error.details)


@test_runs_bp.errorhandler(InvalidStateError)
def _handle_invalid_state(error: InvalidStateError):
    return api_error(
        E.CONFLICT_STATE, str(error),
        details={"current": error.current, "target": error.target},
    )


@test_runs_bp.errorhandler(SQLAlchemyError)
def _handle_db(error: SQLAlchemyError):
    db.session.rollback()
    logger.exception("Database error in test_runs_bp endpoint=%s", request.endpoint)
    return api_error(E.DATABASE, "Database error")


@test_runs_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in test_runs_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Helpers ──────────────────────────────────────────────────────────────

def _get_run(run_id):
    run = db.session.get(TestRun, run_id)
    if run is None:
        raise NotFoundError(resource="TestRun", resource_id=run_id)
    return run


def _as_bool(value, default):
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _parse_cases(data):
    if data.get("cases") is not None:
        if not isinstance(data["cases"], list):
            raise ValidationError("cases must be a list", details={"cases": "list required"})
        return [TestCaseSpec.from_dict(c or {}) for c in data["cases"]]
    return TestCaseSpec.expand_matrix(
        files=data.get("selected_files"),
        urls=data.get("selected_urls"),
        ai_jobs=data.get("selected_ai_jobs"),
    )


def _parse_metrics(data):
    raw = data.get("metrics")
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise ValidationError("metrics must be a list", details={"metrics": "list required"})
    return [MetricDefinition.from_dict(d or {}) for d in raw]


# ═════════════════════════════════════════════════════════════════════════
# Catalog
# ═════════════════════════════════════════════════════════════════════════

@test_runs_bp.route("/ai-jobs", methods=["GET"])
def list_ai_jobs():
    items = [{"id": job_id, **info} for job_id, info in AI_JOB_CATALOG.items()]
    return jsonify({"items": items, "total": len(items)})


# ═════════════════════════════════════════════════════════════════════════
# Runs
# ═════════════════════════════════════════════════════════════════════════

@test_runs_bp.route("/test-runs", methods=["POST"])
def create_test_run():
    """Create a run and start it.

    ``"async": true`` (default) returns 202 immediately and executes on a
    background thread; ``"async": false`` executes inline and returns 201
    with the finalized run.
    """
    data = request.get_json(silent=True) or {}
    cases = _parse_cases(data)
    definitions = _parse_metrics(data)
    run_async = _as_bool(data.get("async"), True)

    orchestrator = build_orchestrator()
    run = orchestrator.create_run(
        data.get("name"),
        data.get("user_id"),
        cases,
        metric_definitions=definitions,
        configuration=data.get("options") or {},
    )

    if run_async:
        execute_in_background(run.id)
        return jsonify(run.to_dict()), 202

    orchestrator.execute(run.id, metric_definitions=definitions)
    return jsonify(run.to_dict(include_metrics=True)), 201


@test_runs_bp.route("/test-runs", methods=["GET"])
def list_test_runs():
    q = TestRun.query
    user_id = request.args.get("user_id")
    if user_id:
        q = q.filter_by(user_id=user_id)
    items, total = paginate_query(q.order_by(TestRun.created_at.desc()))
    return jsonify({"items": [r.to_dict() for r in items], "total": total})


@test_runs_bp.route("/test-runs/<run_id>", methods=["GET"])
def get_test_run(run_id):
    run = _get_run(run_id)
    d = run.to_dict(
        include_results=_as_bool(request.args.get("include_results"), False),
        include_metrics=_as_bool(request.args.get("include_metrics"), False),
    )
    d["active"] = is_run_active(run.id)
    return jsonify(d)


@test_runs_bp.route("/test-runs/<run_id>/cancel", methods=["POST"])
def cancel_test_run(run_id):
    run = _get_run(run_id)
    if not cancel_run(run.id):
        return api_error(
            E.CONFLICT_STATE, f"TestRun {run.id} is not executing",
            details={"status": run.status, "is_finalized": run.is_finalized},
        )
    return jsonify({"id": run.id, "cancel_requested": True}), 202


@test_runs_bp.route("/test-runs/<run_id>", methods=["DELETE"])
def delete_test_run(run_id):
    run = _get_run(run_id)
    if not run.is_finalized or is_run_active(run.id):
        raise InvalidStateError("TestRun", run.id, "running", "deleted")
    db.session.delete(run)
    db.session.commit()
    logger.info("TestRun %s deleted", run_id, extra={"test_run_id": run_id})
    return jsonify({"deleted": run_id}), 200


# ═════════════════════════════════════════════════════════════════════════
# Results & metrics
# ═════════════════════════════════════════════════════════════════════════

@test_runs_bp.route("/test-runs/<run_id>/results", methods=["GET"])
def list_test_results(run_id):
    run = _get_run(run_id)
    q = TestResult.query.filter_by(test_run_id=run.id)
    status = request.args.get("status")
    if status:
        if status not in RESULT_STATUSES:
            raise ValidationError(f"Invalid status '{status}'", details={"status": sorted(RESULT_STATUSES)})
        q = q.filter_by(status=status)
    ai_job = request.args.get("ai_job")
    if ai_job:
        q = q.filter_by(ai_job=ai_job)
    items, total = paginate_query(q.order_by(TestResult.created_at))
    return jsonify({"items": [r.to_dict() for r in items], "total": total})


@test_runs_bp.route("/test-runs/<run_id>/metrics", methods=["GET"])
def list_test_metrics(run_id):
    run = _get_run(run_id)
    q = TestMetric.query.filter_by(test_run_id=run.id)
    ai_job = request.args.get("ai_job")
    if ai_job:
        q = q.filter_by(ai_job=ai_job)
    items = q.order_by(TestMetric.ai_job, TestMetric.metric_name).all()
    return jsonify({"items": [m.to_dict() for m in items], "total": len(items)})


@test_runs_bp.route("/metrics/history", methods=["GET"])
def metric_history():
    metric_name = request.args.get("metric_name")
    ai_job = request.args.get("ai_job")
    if not metric_name or not ai_job:
        raise ValidationError(
            "metric_name and ai_job are required",
            details={"metric_name": "required", "ai_job": "required"},
        )
    limit = min(request.args.get("limit", 50, type=int), 500)
    items = TrendAnalyzer().series(
        metric_name, ai_job,
        time_period=request.args.get("time_period", "test"),
        user_id=request.args.get("user_id"),
        limit=limit,
    )
    return jsonify({"items": [m.to_dict() for m in items], "total": len(items)})


@test_runs_bp.route("/metrics/performance", methods=["GET"])
def performance_summary():
    """Performance metrics per ai_job over the last ``hours`` (default 24)."""
    hours = request.args.get("hours", 24, type=float)
    if hours <= 0:
        raise ValidationError("hours must be a positive number", details={"hours": "positive number"})
    items = TrendAnalyzer().performance_summary(hours, user_id=request.args.get("user_id"))
    return jsonify({"hours": hours, "items": items, "total": len(items)})


# ═════════════════════════════════════════════════════════════════════════
# Test sources
# ═════════════════════════════════════════════════════════════════════════

@test_runs_bp.route("/test-sources", methods=["GET"])
def list_sources():
    return jsonify(list_test_sources(current_app.config.get("TESTBENCH_FILES_ROOT")))
