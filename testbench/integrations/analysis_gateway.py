"""
AI Analysis Testbench
Analysis collaborator gateway.

The engine never performs AI analysis itself. Every call into an analysis
service goes through an ``AnalysisEngine``:

    - HttpAnalysisEngine  — remote analysis service over HTTP (requests.Session)
    - StubAnalysisEngine  — deterministic local stub for dev/testing

and every pass/fail decision goes through a ``Validator``.

Contract:
    engine.run(ai_job, source, test_type=..., media_type=..., timeout=...) → dict
        {output, confidence, duration_ms, tokens_used, api_calls,
         estimated_cost, memory_mb}
    raises AnalysisError on failure.

    validator.accepts(ai_job, output) → (bool, reason)

Testability: pass a mock ``session`` to HttpAnalysisEngine() in tests instead
of letting it create a real requests.Session internally.
"""

from __future__ import annotations

import hashlib
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Any

import requests

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 120


# ── AI job catalog ─────────────────────────────────────────────────────────

AI_JOB_CATALOG: dict[str, dict] = {
    "object_detection": {
        "name": "Object Detection",
        "description": "Detect and identify objects in images/video",
    },
    "transcription": {
        "name": "Audio Transcription",
        "description": "Convert speech to text",
    },
    "speaker_diarization": {
        "name": "Speaker Diarization",
        "description": "Identify different speakers",
    },
    "voice_print_recognition": {
        "name": "Voice Print Recognition",
        "description": "Match voices to known speakers",
    },
    "sentiment_analysis": {
        "name": "Sentiment Analysis",
        "description": "Analyze emotional tone",
    },
    "summarization": {
        "name": "Text Summarization",
        "description": "Generate content summaries",
    },
    "thumbnail_generation": {
        "name": "Thumbnail Generation",
        "description": "Generate thumbnails and key moments",
    },
    "ocr_extraction": {
        "name": "OCR Text Extraction",
        "description": "Extract text from images/video frames",
    },
    "content_categorization": {
        "name": "Content Categorization",
        "description": "Automatically categorize content",
    },
    "named_entity_recognition": {
        "name": "Named Entity Recognition",
        "description": "Extract entities from text",
    },
    "profanity_detection": {
        "name": "Profanity Detection",
        "description": "Detect inappropriate content",
    },
    "keyword_detection": {
        "name": "Keyword Detection",
        "description": "Identify key terms and phrases",
    },
}


# ── Media type detection (file_upload sources) ─────────────────────────────

_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp"}
_AUDIO_EXTENSIONS = {".mp3", ".wav", ".m4a", ".aac", ".ogg", ".flac"}
_VIDEO_EXTENSIONS = {".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm", ".mkv"}


def detect_media_type(path: str) -> str:
    """Map a file path to the coarse media type the analysis service expects."""
    ext = os.path.splitext(path)[1].lower()
    if ext in _IMAGE_EXTENSIONS:
        return "image/jpeg"
    if ext in _AUDIO_EXTENSIONS:
        return "audio/mpeg"
    if ext in _VIDEO_EXTENSIONS:
        return "video/mp4"
    return "application/octet-stream"


class AnalysisError(Exception):
    """Raised by an AnalysisEngine when an analysis call fails.

    Attributes:
        kind:           unreachable | timeout | analysis_error | malformed_output
        not_applicable: True when the service declares the job not applicable
                        to the source (the case is skipped, not failed).
        status_code:    HTTP status, when the failure came from an HTTP response.
    """

    def __init__(
        self,
        message: str,
        kind: str = "analysis_error",
        *,
        not_applicable: bool = False,
        status_code: int | None = None,
    ) -> None:
        self.kind = kind
        self.not_applicable = not_applicable
        self.status_code = status_code
        super().__init__(message)


# ── Engine abstract base ───────────────────────────────────────────────────

class AnalysisEngine(ABC):
    """Abstract interface for analysis collaborators."""

    @abstractmethod
    def run(
        self,
        ai_job: str,
        source: str,
        *,
        test_type: str = "file_upload",
        media_type: str | None = None,
        timeout: float | None = None,
    ) -> dict:
        """
        Run one AI job against one source.

        Returns:
            dict with keys: output, confidence, duration_ms, tokens_used,
            api_calls, estimated_cost, memory_mb (all but output optional)
        """
        ...


class HttpAnalysisEngine(AnalysisEngine):
    """Remote analysis service reached over HTTP.

    A single attempt per case: the per-case timeout bounds the whole call,
    so retries are left to the service.

    Usage:
        engine = HttpAnalysisEngine("http://analysis:8080", api_key="...")
        payload = engine.run("transcription", "testfiles/audio/a.mp3")
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        session: requests.Session | None = None,
        default_timeout: float = _DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.default_timeout = default_timeout
        self._session: requests.Session | None = session

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def run(self, ai_job, source, *, test_type="file_upload", media_type=None, timeout=None):
        timeout = timeout or self.default_timeout
        url = f"{self.base_url}/analyze"
        body = {"ai_job": ai_job, "source": source, "test_type": test_type}
        if media_type:
            body["media_type"] = media_type

        t0 = time.perf_counter()
        try:
            resp = self.session.request("POST", url, json=body, headers=self._headers(), timeout=timeout)
        except requests.Timeout:
            logger.warning("Analysis request timed out job=%s source=%s", ai_job, source)
            raise AnalysisError(f"Analysis request timed out after {timeout}s", kind="timeout")
        except requests.RequestException as exc:
            logger.warning("Analysis service unreachable job=%s error=%s", ai_job, exc)
            raise AnalysisError(str(exc)[:500], kind="unreachable")
        elapsed_ms = int((time.perf_counter() - t0) * 1000)

        try:
            data = resp.json() if resp.content else None
        except ValueError:
            data = None

        if resp.status_code == 422 and isinstance(data, dict) and data.get("error") == "not_applicable":
            raise AnalysisError(
                data.get("message") or f"{ai_job} is not applicable to this source",
                not_applicable=True,
                status_code=resp.status_code,
            )
        if not resp.ok:
            raise AnalysisError(
                f"HTTP {resp.status_code}: {resp.text[:500]}",
                kind="analysis_error",
                status_code=resp.status_code,
            )
        if not isinstance(data, dict):
            raise AnalysisError("Analysis service returned a non-JSON body", kind="malformed_output")

        data.setdefault("duration_ms", elapsed_ms)
        return data


class StubAnalysisEngine(AnalysisEngine):
    """
    Local stub that returns deterministic analysis payloads for dev/testing.
    No analysis service required.
    """

    def run(self, ai_job, source, *, test_type="file_upload", media_type=None, timeout=None):
        digest = hashlib.sha256(f"{ai_job}:{source}".encode()).digest()
        confidence = round(0.6 + (digest[0] / 255.0) * 0.39, 4)
        tokens = 200 + digest[1] * 4
        return {
            "output": {
                "ai_job": ai_job,
                "source": source,
                "media_type": media_type or test_type,
                "labels": [f"label_{b % 7}" for b in digest[2:5]],
                "confidence": confidence,
            },
            "confidence": confidence,
            "duration_ms": 50 + digest[5],
            "tokens_used": tokens,
            "api_calls": 1 + digest[6] % 3,
            "estimated_cost": round(tokens * 0.000002, 6),
            "memory_mb": round(64 + digest[7] / 4, 2),
        }


# ── Validators ─────────────────────────────────────────────────────────────

class Validator(ABC):
    """Decides whether an analysis output is acceptable for an AI job."""

    @abstractmethod
    def accepts(self, ai_job: str, output: Any) -> tuple[bool, str]:
        ...


class DefaultValidator(Validator):
    """Accept non-empty, error-free outputs; optionally enforce a confidence floor."""

    def __init__(self, min_confidence: float | None = None) -> None:
        self.min_confidence = min_confidence

    def accepts(self, ai_job, output):
        if not output:
            return False, "Analysis returned an empty output"
        if isinstance(output, dict) and output.get("error"):
            return False, str(output["error"])
        if self.min_confidence is not None and isinstance(output, dict):
            confidence = output.get("confidence")
            if confidence is None:
                return False, f"No confidence reported (minimum {self.min_confidence})"
            if float(confidence) < self.min_confidence:
                return False, f"Confidence {confidence} below minimum {self.min_confidence}"
        return True, "AI job completed successfully"
