"""Result Recorder — drives a TestResult through its lifecycle.

    pending ──begin──▶ running ──complete──▶ passed | failed | skipped
    pending ──skip───────────────────────▶ skipped

Terminal states are write-once: any further transition raises
InvalidStateError. Every transition is committed immediately so a crashed
run leaves an inspectable trail.
"""

import logging
from datetime import datetime, timezone

from testbench.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from testbench.models import db
from testbench.models.testing import TERMINAL_STATUSES, TestResult, validate_result_transition

logger = logging.getLogger(__name__)

_MEASUREMENT_FIELDS = (
    "confidence_score",
    "tokens_used",
    "api_calls_made",
    "estimated_cost",
    "memory_usage_mb",
)


def _as_utc(value):
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def decide_outcome(validator, ai_job, measurement):
    """Apply the pass/fail policy to a successful execution.

    Returns ("passed" | "failed", reason).
    """
    accepted, reason = validator.accepts(ai_job, measurement.ai_output)
    return ("passed" if accepted else "failed"), reason


class ResultRecorder:
    """Persists TestResult state transitions."""

    def _load(self, result_id):
        result = db.session.get(TestResult, result_id)
        if result is None:
            raise NotFoundError(resource="TestResult", resource_id=result_id)
        return result

    def _transition(self, result, new_status):
        if not validate_result_transition(result.status, new_status):
            raise InvalidStateError("TestResult", result.id, result.status, new_status)
        if result.test_run is not None and result.test_run.is_finalized:
            raise InvalidStateError("TestRun", result.test_run_id, "finalized", new_status)
        logger.debug(
            "TestResult %s: %s → %s", result.id, result.status, new_status,
            extra={"result_id": result.id, "test_run_id": result.test_run_id, "status": new_status},
        )
        result.status = new_status

    def begin(self, result_id, started_at=None):
        """pending → running; stamps started_at (now unless the caller observed the start)."""
        result = self._load(result_id)
        self._transition(result, "running")
        result.started_at = started_at or datetime.now(timezone.utc)
        db.session.commit()
        return result

    def complete(self, result_id, outcome, measurement=None, error_details=None, reason=None):
        """running → passed | failed | skipped.

        Args:
            outcome: "passed", "failed" or "skipped".
            measurement: executor Measurement (copied onto the row when given).
            error_details: structured failure payload, stored only when outcome is "failed".
            reason: pass_fail_reason text.

        Raises:
            InvalidStateError: result is not running (terminal results are write-once).
        """
        if outcome not in TERMINAL_STATUSES:
            raise ValidationError(f"Outcome must be one of {sorted(TERMINAL_STATUSES)}, got '{outcome}'")
        result = self._load(result_id)
        if result.status != "running":
            raise InvalidStateError("TestResult", result.id, result.status, outcome)
        self._transition(result, outcome)
        self._stamp_completion(result)

        if measurement is not None:
            result.ai_output = measurement.ai_output
            for field in _MEASUREMENT_FIELDS:
                setattr(result, field, getattr(measurement, field))
            if measurement.duration_ms is not None:
                result.meta = {**(result.meta or {}), "reported_duration_ms": measurement.duration_ms}
        result.error_details = error_details if outcome == "failed" else None
        result.pass_fail_reason = reason or _default_reason(outcome)

        db.session.commit()
        if outcome == "failed":
            logger.warning(
                "TestResult %s failed job=%s: %s", result.id, result.ai_job, result.pass_fail_reason,
                extra={"result_id": result.id, "test_run_id": result.test_run_id, "ai_job": result.ai_job},
            )
        return result

    def skip(self, result_id, reason):
        """pending | running → skipped (case excluded, not applicable, timed out run, cancellation)."""
        result = self._load(result_id)
        self._transition(result, "skipped")
        self._stamp_completion(result)
        result.pass_fail_reason = reason
        result.error_details = None
        db.session.commit()
        return result

    @staticmethod
    def _stamp_completion(result):
        now = datetime.now(timezone.utc)
        started = _as_utc(result.started_at)
        if started is None:
            result.completed_at = now
            return
        completed = max(now, started)
        result.completed_at = completed
        result.duration_ms = int((completed - started).total_seconds() * 1000)


def _default_reason(outcome):
    return {
        "passed": "AI job completed successfully",
        "failed": "Test case failed",
        "skipped": "Test case skipped",
    }[outcome]
