"""Test Case Executor — runs one declared test case against the analysis collaborator.

Contract:
    executor.execute(ai_job, test_source, test_type) → Measurement
    raises ExecutionError (never anything else) when the case cannot be run.

The executor does not persist anything; the orchestrator hands the
Measurement (or the ExecutionError) to the ResultRecorder.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass
from typing import Any
from urllib.parse import urlparse

from testbench.core.exceptions import CaseNotApplicableError, ExecutionError
from testbench.integrations.analysis_gateway import (
    AI_JOB_CATALOG,
    AnalysisEngine,
    AnalysisError,
    detect_media_type,
)
from testbench.models.testing import TEST_TYPES

logger = logging.getLogger(__name__)


@dataclass
class Measurement:
    """Raw measurement of one successful analysis call."""
    ai_output: Any
    confidence_score: float | None = None
    duration_ms: int | None = None
    tokens_used: int | None = None
    api_calls_made: int | None = None
    estimated_cost: float | None = None
    memory_usage_mb: float | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def _number(payload: dict, key: str, cast):
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ExecutionError(f"Field '{key}' is not numeric: {value!r}", kind="malformed_output")
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ExecutionError(f"Field '{key}' is not numeric: {value!r}", kind="malformed_output")


class TestCaseExecutor:
    """Runs (ai_job, test_source, test_type) cases through an AnalysisEngine."""

    __test__ = False

    def __init__(
        self,
        engine: AnalysisEngine,
        catalog: dict | None = None,
        *,
        files_root: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.engine = engine
        self.catalog = AI_JOB_CATALOG if catalog is None else catalog
        self.files_root = files_root
        self.timeout = timeout

    def supports(self, ai_job: str) -> bool:
        return ai_job in self.catalog

    def _check_input(self, ai_job: str, test_source: str, test_type: str) -> str | None:
        """Validate the case; return the media type for file uploads."""
        if not test_source or not test_source.strip():
            raise ExecutionError("test_source must not be empty", kind="invalid_input")
        if len(test_source) > 500:
            raise ExecutionError("test_source must be ≤ 500 characters", kind="invalid_input")
        if test_type not in TEST_TYPES:
            raise ExecutionError(f"Unknown test_type '{test_type}'", kind="invalid_input")
        if not self.supports(ai_job):
            raise ExecutionError(f"Unknown AI job '{ai_job}'", kind="unsupported_job")

        if test_type == "url_analysis":
            if urlparse(test_source).scheme not in ("http", "https"):
                raise ExecutionError(f"Not an http(s) URL: {test_source}", kind="invalid_input")
            return None

        if self.files_root:
            path = os.path.join(self.files_root, test_source)
            if not os.path.exists(path):
                raise ExecutionError(f"Test file not found: {test_source}", kind="source_missing")
        return detect_media_type(test_source)

    def execute(self, ai_job: str, test_source: str, test_type: str, *, timeout: float | None = None) -> Measurement:
        """Run one test case and return its Measurement.

        Raises:
            CaseNotApplicableError: the collaborator declared the case not applicable.
            ExecutionError: invalid input, collaborator failure, timeout or malformed output.
        """
        media_type = self._check_input(ai_job, test_source, test_type)
        timeout = timeout or self.timeout

        t0 = time.perf_counter()
        try:
            payload = self.engine.run(
                ai_job, test_source,
                test_type=test_type, media_type=media_type, timeout=timeout,
            )
        except AnalysisError as exc:
            if exc.not_applicable:
                raise CaseNotApplicableError(str(exc))
            details = {"status_code": exc.status_code} if exc.status_code else None
            raise ExecutionError(str(exc), kind=exc.kind, details=details) from exc
        except ExecutionError:
            raise
        except Exception as exc:
            logger.warning("Analysis engine raised %s for job=%s", type(exc).__name__, ai_job)
            raise ExecutionError(f"{type(exc).__name__}: {exc}", kind="analysis_error") from exc
        elapsed_ms = int((time.perf_counter() - t0) * 1000)

        if not isinstance(payload, dict) or "output" not in payload:
            raise ExecutionError("Analysis payload has no 'output'", kind="malformed_output")

        confidence = _number(payload, "confidence", float)
        if confidence is not None and not 0.0 <= confidence <= 1.0:
            raise ExecutionError(f"Confidence {confidence} outside [0, 1]", kind="malformed_output")

        duration_ms = _number(payload, "duration_ms", int)
        measurement = Measurement(
            ai_output=payload["output"],
            confidence_score=confidence,
            duration_ms=elapsed_ms if duration_ms is None else duration_ms,
            tokens_used=_number(payload, "tokens_used", int),
            api_calls_made=_number(payload, "api_calls", int),
            estimated_cost=_number(payload, "estimated_cost", float),
            memory_usage_mb=_number(payload, "memory_mb", float),
        )
        logger.debug(
            "Executed job=%s source=%s in %dms", ai_job, test_source, elapsed_ms,
            extra={"ai_job": ai_job, "duration_ms": elapsed_ms},
        )
        return measurement
