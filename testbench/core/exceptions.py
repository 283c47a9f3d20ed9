"""
Engine-wide exception hierarchy.

Services raise these types; the blueprint registers one handler per type
and maps them to consistent HTTP status codes.

    NotFoundError          unknown run / result / metric id          → 404
    ValidationError        well-formed input violating a rule        → 422
    InvalidStateError      illegal lifecycle transition              → 409
    ExecutionError         one test case could not be executed       (recorded, never raised upward)
    AggregationInputError  metric definition cannot be reduced       (key omitted, warning reported)

Usage:
    from testbench.core.exceptions import ExecutionError, InvalidStateError

    raise ExecutionError("Analysis timed out after 30s", kind="timeout")
    raise InvalidStateError("TestResult", result.id, result.status, "passed")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "TestRun").
        resource_id: The identifier that was looked up.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidStateError(Exception):
    """Raised when a lifecycle transition is not allowed from the current state.

    This is an integration fault, not a test outcome: inside an orchestrated
    run it aborts the run.
    """

    def __init__(self, resource: str, resource_id: str | None, current: str, target: str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.current = current
        self.target = target
        super().__init__(f"{resource} id={resource_id}: invalid transition {current} → {target}")


EXECUTION_ERROR_KINDS = {
    "invalid_input",
    "unsupported_job",
    "source_missing",
    "unreachable",
    "timeout",
    "analysis_error",
    "malformed_output",
    "not_applicable",
}


class ExecutionError(Exception):
    """A single test case could not be executed.

    The orchestrator converts it into a ``failed`` (or ``skipped``) TestResult;
    it never aborts the run.

    Args:
        message: Human-readable explanation.
        kind: One of EXECUTION_ERROR_KINDS.
        details: Extra structured context stored in ``error_details``.
    """

    def __init__(self, message: str, kind: str = "analysis_error", details: dict | None = None) -> None:
        self.kind = kind if kind in EXECUTION_ERROR_KINDS else "analysis_error"
        self.details = details or {}
        super().__init__(message)

    def to_details(self) -> dict:
        """Return the ``error_details`` payload for a failed TestResult."""
        payload = {"error": str(self), "kind": self.kind}
        if self.details:
            payload["details"] = self.details
        return payload


class CaseNotApplicableError(ExecutionError):
    """The analysis collaborator reported the case as not applicable → ``skipped``."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message, kind="not_applicable", details=details)


class AggregationInputError(Exception):
    """A metric definition references a missing or non-numeric source field,
    or an unknown aggregation type."""

    def __init__(self, metric_name: str, source_field: str | None, reason: str) -> None:
        self.metric_name = metric_name
        self.source_field = source_field
        self.reason = reason
        super().__init__(f"Metric '{metric_name}' (source_field={source_field!r}): {reason}")
