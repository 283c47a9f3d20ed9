"""
AI Analysis Testbench
Test Run Orchestrator.

Sequencing of one validation run:

    create_run  → TestRun + one pending TestResult per declared case
    execute     → dispatch cases to the executor (bounded thread pool)
                → barrier: every result terminal (or run timeout / cancellation)
                → MetricAggregator → TrendAnalyzer
                → finalize (completed_at)

Threading: worker threads only call ``TestCaseExecutor.execute`` with plain
values. Every store write happens on the orchestrating thread as futures
complete, so concurrent cases never share a session or a row.

Timeouts: a case's deadline and its ``started_at`` are taken when a worker
actually picks it up, not when it is queued. A timed-out worker cannot be
interrupted; it keeps its slot (counted against ``max_workers``) until the
engine returns, so later cases wait for a free worker instead of timing out
in the queue.

Cancellation: ``cancel_run(run_id)`` sets a per-run event. Queued cases are
skipped; in-flight cases finish normally or are skipped once their
individual timeout fires.

Usage:
    from testbench.services.orchestrator import build_orchestrator, TestCaseSpec

    orch = build_orchestrator()
    run = orch.run("nightly", user_id, [TestCaseSpec("transcription", "a.mp3")])
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from testbench.core.exceptions import (
    CaseNotApplicableError,
    ExecutionError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from testbench.integrations.analysis_gateway import DefaultValidator, HttpAnalysisEngine, StubAnalysisEngine
from testbench.models import db
from testbench.models.testing import TEST_TYPES, TestResult, TestRun
from testbench.services.aggregator import DEFAULT_METRIC_DEFINITIONS, MetricAggregator, MetricDefinition
from testbench.services.executor import TestCaseExecutor
from testbench.services.recorder import ResultRecorder, decide_outcome
from testbench.services.trend_analyzer import TrendAnalyzer

logger = logging.getLogger(__name__)

# Upper bound on a single wait so cancellation is noticed promptly
_POLL_SECONDS = 0.25

# In-memory registry of active runs (run_id → cancel event)
_active_runs: dict[str, threading.Event] = {}
_active_runs_guard = threading.Lock()


def _register(run_id):
    """Claim ``run_id`` for execution. Returns its cancel event, or None if already claimed."""
    with _active_runs_guard:
        if run_id in _active_runs:
            return None
        event = _active_runs[run_id] = threading.Event()
        return event


def _unregister(run_id):
    with _active_runs_guard:
        _active_runs.pop(run_id, None)


def is_run_active(run_id):
    with _active_runs_guard:
        return run_id in _active_runs


def cancel_run(run_id):
    """Request cancellation of an executing run. Returns False if it is not active."""
    with _active_runs_guard:
        event = _active_runs.get(run_id)
    if event is None:
        return False
    event.set()
    logger.info("Cancellation requested for run %s", run_id, extra={"test_run_id": run_id})
    return True


# ═════════════════════════════════════════════════════════════════════════════
# Declared test cases
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TestCaseSpec:
    """A declared (ai_job, test_source, test_type) unit of validation work."""

    __test__ = False

    ai_job: str
    test_source: str
    test_type: str = "file_upload"

    @classmethod
    def from_dict(cls, data):
        ai_job = (data.get("ai_job") or "").strip()
        source = (data.get("test_source") or "").strip()
        test_type = data.get("test_type", "file_upload")
        if not ai_job:
            raise ValidationError("ai_job is required", details={"ai_job": "required"})
        if not source:
            raise ValidationError("test_source is required", details={"test_source": "required"})
        if len(source) > 500:
            raise ValidationError("test_source must be ≤ 500 characters")
        if test_type not in TEST_TYPES:
            raise ValidationError(f"Invalid test_type '{test_type}'", details={"test_type": sorted(TEST_TYPES)})
        return cls(ai_job=ai_job, test_source=source, test_type=test_type)

    @classmethod
    def expand_matrix(cls, files=None, urls=None, ai_jobs=None):
        """Every file and every URL crossed with every AI job."""
        files, urls, ai_jobs = files or [], urls or [], ai_jobs or []
        if not ai_jobs:
            raise ValidationError("At least one AI job must be selected")
        if not files and not urls:
            raise ValidationError("At least one file or URL must be selected")
        cases = [cls.from_dict({"ai_job": job, "test_source": f, "test_type": "file_upload"})
                 for f in files for job in ai_jobs]
        cases += [cls.from_dict({"ai_job": job, "test_source": u, "test_type": "url_analysis"})
                  for u in urls for job in ai_jobs]
        return cases

    def to_dict(self):
        return {"ai_job": self.ai_job, "test_source": self.test_source, "test_type": self.test_type}


@dataclass
class _InFlight:
    """A submitted case. The worker fills ``started_at``/``started_mono`` before setting ``started``."""

    result_id: str
    ai_job: str
    started: threading.Event = field(default_factory=threading.Event)
    started_at: datetime | None = None
    started_mono: float | None = None
    deadline: float | None = None
    begun: bool = False


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Orchestrator
# ═════════════════════════════════════════════════════════════════════════════

class TestRunOrchestrator:
    """Creates, executes and finalizes test runs."""

    __test__ = False

    def __init__(
        self,
        executor,
        validator=None,
        *,
        recorder=None,
        aggregator=None,
        analyzer=None,
        max_workers=None,
        case_timeout=None,
        run_timeout=None,
    ):
        cfg = current_app.config if has_app_context() else {}
        self.executor = executor
        self.validator = validator or DefaultValidator()
        self.recorder = recorder or ResultRecorder()
        self.aggregator = aggregator or MetricAggregator()
        self.analyzer = analyzer or TrendAnalyzer()
        self.max_workers = max(1, int(max_workers or cfg.get("TESTBENCH_MAX_WORKERS", 4)))
        self.case_timeout = (
            case_timeout if case_timeout is not None
            else cfg.get("TESTBENCH_CASE_TIMEOUT_SECONDS", 120)
        ) or None
        self.run_timeout = (
            run_timeout if run_timeout is not None
            else cfg.get("TESTBENCH_RUN_TIMEOUT_SECONDS", 3600)
        ) or None

    # ── Run creation ────────────────────────────────────────────────────────

    def create_run(self, name, user_id, cases, *, metric_definitions=None, configuration=None):
        """Create a TestRun with one pending TestResult per case (committed)."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Test run name is required", details={"name": "required"})
        if len(name) > 255:
            raise ValidationError("Test run name must be ≤ 255 characters")
        if not user_id:
            raise ValidationError("user_id is required", details={"user_id": "required"})
        if not cases:
            raise ValidationError("At least one test case is required")

        types = {c.test_type for c in cases}
        config = dict(configuration or {})
        config["cases"] = [c.to_dict() for c in cases]
        if metric_definitions is not None:
            config["metrics"] = [d.to_dict() for d in metric_definitions]

        run = TestRun(
            user_id=user_id,
            name=name,
            test_type=types.pop() if len(types) == 1 else "mixed",
            configuration=config,
            warnings=[],
        )
        db.session.add(run)
        db.session.flush()
        for case in cases:
            db.session.add(TestResult(
                test_run_id=run.id,
                user_id=user_id,
                test_type=case.test_type,
                test_source=case.test_source,
                ai_job=case.ai_job,
                status="pending",
            ))
        db.session.commit()
        logger.info("TestRun created id=%s cases=%d", run.id, len(cases), extra={"test_run_id": run.id})
        return run

    def run(self, name, user_id, cases, *, metric_definitions=None, configuration=None):
        """Create and execute a run in one call."""
        run = self.create_run(
            name, user_id, cases,
            metric_definitions=metric_definitions, configuration=configuration,
        )
        return self.execute(run.id, metric_definitions=metric_definitions)

    # ── Execution ───────────────────────────────────────────────────────────

    def execute(self, run_id, *, metric_definitions=None):
        """Dispatch, aggregate, analyze and finalize one run.

        Per-case failures are recorded on their results. Structural failures
        (invalid transitions, storage errors, bad configuration) abort the run:
        open results are skipped, ``error_message`` and ``completed_at`` are
        written, and the exception propagates.
        """
        run = db.session.get(TestRun, run_id)
        if run is None:
            raise NotFoundError(resource="TestRun", resource_id=run_id)
        if run.is_finalized:
            raise InvalidStateError("TestRun", run_id, "finalized", "running")
        if run.started_at is not None:
            raise InvalidStateError("TestRun", run_id, "running", "running")
        cancel_event = _register(run_id)
        if cancel_event is None:
            raise InvalidStateError("TestRun", run_id, "running", "running")

        try:
            run.started_at = _utcnow()
            db.session.commit()
            logger.info(
                "TestRun %s started workers=%d case_timeout=%s run_timeout=%s",
                run_id, self.max_workers, self.case_timeout, self.run_timeout,
                extra={"test_run_id": run_id},
            )

            self._dispatch(run, cancel_event)
            self._close_stragglers(run_id, "run ended before the case was dispatched")

            definitions = self._definitions(run, metric_definitions)
            metrics, warnings = self.aggregator.aggregate_run(run, definitions)
            self.analyzer.analyze_all(metrics)
            self._finalize(run, warnings)
        except Exception as exc:
            self._abort(run_id, exc)
            raise
        finally:
            _unregister(run_id)
        return run

    def _dispatch(self, run, cancel_event):
        queue = deque()
        for result in (TestResult.query
                       .filter_by(test_run_id=run.id, status="pending")
                       .order_by(TestResult.created_at)
                       .all()):
            if not self.executor.supports(result.ai_job):
                self.recorder.skip(result.id, f"AI job '{result.ai_job}' is not supported in this environment")
                continue
            queue.append((result.id, result.ai_job, result.test_source, result.test_type))

        run_deadline = time.monotonic() + self.run_timeout if self.run_timeout else None
        in_flight = {}
        # timed-out workers still holding a pool thread; they count against max_workers
        abandoned = set()
        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=f"testrun-{run.id[:8]}")
        try:
            while queue or in_flight:
                if run_deadline is not None and time.monotonic() >= run_deadline:
                    logger.warning("TestRun %s hit its %ss timeout", run.id, self.run_timeout,
                                   extra={"test_run_id": run.id})
                    self._skip_remaining(queue, in_flight, "run timeout")
                    break

                if cancel_event.is_set():
                    if run.cancelled_at is None:
                        run.cancelled_at = _utcnow()
                        db.session.commit()
                    while queue:
                        self.recorder.skip(queue.popleft()[0], "run cancelled")

                abandoned = {f for f in abandoned if not f.done()}
                while queue and len(in_flight) + len(abandoned) < self.max_workers:
                    result_id, ai_job, source, test_type = queue.popleft()
                    flight = _InFlight(result_id, ai_job)
                    future = pool.submit(self._run_case, flight, ai_job, source, test_type)
                    in_flight[future] = flight

                if not in_flight and not abandoned:
                    continue

                done, _ = wait(
                    list(in_flight) + list(abandoned),
                    timeout=self._wait_timeout(in_flight, run_deadline),
                    return_when=FIRST_COMPLETED,
                )
                self._mark_started(in_flight)
                for future in done:
                    if future in in_flight:
                        self._settle(future, in_flight.pop(future))
                abandoned |= self._expire(in_flight, cancel_event)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _run_case(self, flight, ai_job, source, test_type):
        """Worker body: signal the real start, then execute."""
        flight.started_at = _utcnow()
        flight.started_mono = time.monotonic()
        flight.started.set()
        return self.executor.execute(ai_job, source, test_type, timeout=self.case_timeout)

    def _mark_started(self, in_flight):
        for flight in in_flight.values():
            if flight.started.is_set():
                self._begin(flight)

    def _begin(self, flight):
        """pending → running for a case whose worker has started; arms its deadline."""
        if flight.begun:
            return
        self.recorder.begin(flight.result_id, started_at=flight.started_at)
        if self.case_timeout:
            flight.deadline = flight.started_mono + self.case_timeout
        flight.begun = True

    @staticmethod
    def _wait_timeout(in_flight, run_deadline):
        deadlines = [f.deadline for f in in_flight.values() if f.deadline is not None]
        if run_deadline is not None:
            deadlines.append(run_deadline)
        if not deadlines:
            return _POLL_SECONDS
        return max(0.0, min(_POLL_SECONDS, min(deadlines) - time.monotonic()))

    def _settle(self, future, flight):
        """Record the outcome of a finished case."""
        self._begin(flight)
        try:
            measurement = future.result()
        except CaseNotApplicableError as exc:
            self.recorder.complete(flight.result_id, "skipped", reason=str(exc))
            return
        except ExecutionError as exc:
            self.recorder.complete(flight.result_id, "failed", error_details=exc.to_details(), reason=str(exc))
            return
        except Exception as exc:
            logger.exception("Executor crashed on result %s", flight.result_id)
            error = ExecutionError(f"{type(exc).__name__}: {exc}", kind="analysis_error")
            self.recorder.complete(flight.result_id, "failed", error_details=error.to_details(), reason=str(error))
            return

        error_details = None
        try:
            outcome, reason = decide_outcome(self.validator, flight.ai_job, measurement)
        except Exception as exc:
            logger.warning("Validator raised on result %s: %s", flight.result_id, exc)
            outcome, reason = "failed", f"Validator error: {exc}"
        if outcome == "failed":
            error_details = {"error": reason, "kind": "validation_rejected"}
        self.recorder.complete(
            flight.result_id, outcome,
            measurement=measurement, error_details=error_details, reason=reason,
        )

    def _expire(self, in_flight, cancel_event):
        """Force started cases past their deadline: failed (timeout), or skipped after cancellation.

        Returns the futures whose workers are still running.
        """
        now = time.monotonic()
        still_running = set()
        for future, flight in list(in_flight.items()):
            if flight.deadline is None or now < flight.deadline:
                continue
            del in_flight[future]
            if future.done():
                self._settle(future, flight)
                continue
            still_running.add(future)
            if cancel_event.is_set():
                self.recorder.skip(flight.result_id, "run cancelled")
                continue
            error = ExecutionError(f"Test case exceeded {self.case_timeout}s timeout", kind="timeout")
            self.recorder.complete(flight.result_id, "failed", error_details=error.to_details(), reason=str(error))
        return still_running

    def _skip_remaining(self, queue, in_flight, reason):
        while queue:
            self.recorder.skip(queue.popleft()[0], reason)
        for future, flight in list(in_flight.items()):
            future.cancel()
            self.recorder.skip(flight.result_id, reason)
        in_flight.clear()

    def _close_stragglers(self, run_id, reason):
        open_ids = [
            r.id for r in TestResult.query
            .filter(TestResult.test_run_id == run_id, TestResult.status.in_(("pending", "running")))
            .all()
        ]
        for result_id in open_ids:
            self.recorder.skip(result_id, reason)

    # ── Aggregation & finalization ──────────────────────────────────────────

    @staticmethod
    def _definitions(run, metric_definitions):
        if metric_definitions is not None:
            return list(metric_definitions)
        declared = (run.configuration or {}).get("metrics")
        if declared:
            return [MetricDefinition.from_dict(d) for d in declared]
        return list(DEFAULT_METRIC_DEFINITIONS)

    def _finalize(self, run, warnings):
        run.warnings = list(warnings)
        run.completed_at = _utcnow()
        db.session.commit()
        summary = run.summary()
        logger.info(
            "TestRun %s finalized status=%s passed=%d failed=%d skipped=%d",
            run.id, summary["status"], summary["passed"], summary["failed"], summary["skipped"],
            extra={"test_run_id": run.id, "status": summary["status"]},
        )

    def _abort(self, run_id, exc):
        logger.exception("TestRun %s aborted: %s", run_id, exc, extra={"test_run_id": run_id})
        try:
            db.session.rollback()
            self._close_stragglers(run_id, f"run aborted: {exc}")
            run = db.session.get(TestRun, run_id)
            if run is not None and run.completed_at is None:
                run.error_message = str(exc)[:2000]
                run.completed_at = _utcnow()
                db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not record abort of TestRun %s", run_id)


# ═════════════════════════════════════════════════════════════════════════════
# Factory & background execution
# ═════════════════════════════════════════════════════════════════════════════

def build_orchestrator(**overrides):
    """Build an orchestrator from the active app config.

    ANALYSIS_ENGINE_URL selects the HTTP engine; without it the local stub is used.
    """
    cfg = current_app.config
    url = cfg.get("ANALYSIS_ENGINE_URL")
    if url:
        engine = HttpAnalysisEngine(url, api_key=cfg.get("ANALYSIS_ENGINE_API_KEY"))
    else:
        logger.info("ANALYSIS_ENGINE_URL not set, using StubAnalysisEngine")
        engine = StubAnalysisEngine()
    executor = TestCaseExecutor(
        engine,
        files_root=cfg.get("TESTBENCH_FILES_ROOT"),
        timeout=cfg.get("TESTBENCH_CASE_TIMEOUT_SECONDS"),
    )
    validator = DefaultValidator(min_confidence=cfg.get("TESTBENCH_MIN_CONFIDENCE"))
    return TestRunOrchestrator(executor, validator, **overrides)


def execute_in_background(run_id, metric_definitions=None):
    """Execute a created run on a daemon thread with its own app context."""
    app = current_app._get_current_object()

    def _target():
        with app.app_context():
            try:
                build_orchestrator().execute(run_id, metric_definitions=metric_definitions)
            except Exception:
                logger.error("Background execution of TestRun %s failed", run_id, exc_info=True)

    thread = threading.Thread(target=_target, name=f"testrun-{run_id[:8]}", daemon=True)
    thread.start()
    return thread
