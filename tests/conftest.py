"""
Shared pytest fixtures for the AI Analysis Testbench test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - engine: scripted in-process AnalysisEngine
    - make_orchestrator: TestRunOrchestrator factory wired to ``engine``
"""

import threading
import time

import pytest

from testbench import create_app
from testbench.integrations.analysis_gateway import AnalysisEngine, DefaultValidator
from testbench.models import db as _db
from testbench.services.executor import TestCaseExecutor
from testbench.services.orchestrator import TestRunOrchestrator


class ScriptedEngine(AnalysisEngine):
    """AnalysisEngine whose response per AI job is scripted by the test.

    ``script[ai_job]`` may be a payload dict, an exception instance (raised),
    or a callable ``(ai_job, source) -> payload``. Jobs listed in ``blocking``
    wait on ``release`` before answering. Tracks peak concurrency.
    """

    def __init__(self):
        self.script = {}
        self.blocking = set()
        self.delays = {}
        self.release = threading.Event()
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    @staticmethod
    def payload(confidence=0.9, duration_ms=100, tokens_used=10, estimated_cost=0.01,
                memory_mb=32.0, api_calls=1, output=None):
        return {
            "output": output if output is not None else {"labels": ["ok"], "confidence": confidence},
            "confidence": confidence,
            "duration_ms": duration_ms,
            "tokens_used": tokens_used,
            "api_calls": api_calls,
            "estimated_cost": estimated_cost,
            "memory_mb": memory_mb,
        }

    def run(self, ai_job, source, *, test_type="file_upload", media_type=None, timeout=None):
        with self._lock:
            self.calls.append((ai_job, source))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if ai_job in self.blocking:
                self.release.wait(timeout=10)
            if ai_job in self.delays:
                time.sleep(self.delays[ai_job])
            behaviour = self.script.get(ai_job, self.payload())
            if isinstance(behaviour, BaseException):
                raise behaviour
            if callable(behaviour):
                return behaviour(ai_job, source)
            return behaviour
        finally:
            with self._lock:
                self.active -= 1


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Collaborator fixtures ────────────────────────────────────────────────


@pytest.fixture()
def engine():
    """Scripted analysis engine; blocked jobs are released at teardown."""
    eng = ScriptedEngine()
    yield eng
    eng.release.set()


@pytest.fixture()
def make_orchestrator(engine):
    """Build a TestRunOrchestrator over ``engine`` with explicit limits."""

    def _make(validator=None, **kwargs):
        kwargs.setdefault("max_workers", 4)
        kwargs.setdefault("case_timeout", 5)
        kwargs.setdefault("run_timeout", 30)
        return TestRunOrchestrator(TestCaseExecutor(engine), validator or DefaultValidator(), **kwargs)

    return _make
