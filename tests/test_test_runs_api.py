"""
REST API tests for /api/v1/test-runs and friends.

Runs are started with ``"async": false`` so they finish inside the request
against the in-memory database; the stub analysis engine answers.
"""

import json

from testbench.models import db
from testbench.models.testing import TestResult, TestRun

BASE = "/api/v1"


def _create(client, **overrides):
    body = {
        "name": "API run",
        "user_id": "api-user",
        "cases": [
            {"ai_job": "transcription", "test_source": "audio/a.mp3"},
            {"ai_job": "summarization", "test_source": "https://example.com/p", "test_type": "url_analysis"},
        ],
        "async": False,
    }
    body.update(overrides)
    return client.post(f"{BASE}/test-runs", json=body)


class TestCreateRunApi:

    def test_sync_run_returns_finalized_summary(self, client):
        res = _create(client)
        assert res.status_code == 201
        data = res.get_json()
        assert data["status"] == "passed"
        assert data["total"] == 2 and data["passed"] == 2
        assert data["progress"] == 100
        assert data["test_type"] == "mixed"
        assert data["is_finalized"] is True
        assert {m["metric_name"] for m in data["metrics"]} >= {"processing_time", "test_count"}

    def test_matrix_payload(self, client):
        res = _create(
            client, cases=None,
            selected_files=["a.jpg", "b.mp4"],
            selected_urls=["https://example.com/v"],
            selected_ai_jobs=["object_detection", "ocr_extraction"],
        )
        assert res.status_code == 201
        assert res.get_json()["total"] == 6

    def test_custom_metrics(self, client):
        res = _create(client, metrics=[{
            "metric_name": "spend", "source_field": "estimated_cost",
            "aggregation_type": "sum", "metric_type": "cost",
        }])
        assert res.status_code == 201
        assert [m["metric_name"] for m in res.get_json()["metrics"]] == ["spend", "spend"]

    def test_missing_name_is_422(self, client):
        res = _create(client, name="")
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_REQUIRED"
        assert TestRun.query.count() == 0

    def test_invalid_case_is_422(self, client):
        res = _create(client, cases=[{"ai_job": "transcription", "test_source": "a", "test_type": "fax"}])
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_matrix_without_jobs_is_422(self, client):
        res = _create(client, cases=None, selected_files=["a.jpg"], selected_ai_jobs=[])
        assert res.status_code == 422

    def test_bad_metric_definition_is_422(self, client):
        res = _create(client, metrics=[{"metric_name": "x", "metric_type": "vibes"}])
        assert res.status_code == 422

    def test_unknown_job_recorded_as_skipped(self, client):
        res = _create(client, cases=[{"ai_job": "telepathy", "test_source": "a.mp3"}])
        assert res.status_code == 201
        assert res.get_json()["status"] == "skipped"


class TestReadApi:

    def test_get_run(self, client):
        run_id = _create(client).get_json()["id"]
        res = client.get(f"{BASE}/test-runs/{run_id}?include_results=true")
        assert res.status_code == 200
        data = res.get_json()
        assert data["id"] == run_id
        assert data["active"] is False
        assert len(data["results"]) == 2

    def test_get_unknown_run_is_404(self, client):
        res = client.get(f"{BASE}/test-runs/nope")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_list_runs_filtered_by_user(self, client):
        _create(client)
        _create(client, user_id="other")
        res = client.get(f"{BASE}/test-runs?user_id=other")
        data = res.get_json()
        assert data["total"] == 1
        assert data["items"][0]["user_id"] == "other"

    def test_list_runs_paginated(self, client):
        for _ in range(3):
            _create(client)
        data = client.get(f"{BASE}/test-runs?limit=2").get_json()
        assert data["total"] == 3
        assert len(data["items"]) == 2

    def test_results_status_filter(self, client):
        run_id = _create(client).get_json()["id"]
        res = client.get(f"{BASE}/test-runs/{run_id}/results?status=passed")
        assert res.get_json()["total"] == 2
        res = client.get(f"{BASE}/test-runs/{run_id}/results?status=failed")
        assert res.get_json()["total"] == 0

    def test_results_bad_status_is_422(self, client):
        run_id = _create(client).get_json()["id"]
        assert client.get(f"{BASE}/test-runs/{run_id}/results?status=bogus").status_code == 422

    def test_metrics_of_run(self, client):
        run_id = _create(client).get_json()["id"]
        data = client.get(f"{BASE}/test-runs/{run_id}/metrics?ai_job=transcription").get_json()
        assert data["total"] > 0
        assert {m["ai_job"] for m in data["items"]} == {"transcription"}

    def test_metric_history(self, client):
        _create(client)
        _create(client)
        res = client.get(
            f"{BASE}/metrics/history?metric_name=test_count&ai_job=transcription&user_id=api-user"
        )
        items = res.get_json()["items"]
        assert len(items) == 2
        assert items[0]["trend_direction"] == "stable"
        assert items[1]["trend_direction"] == "unknown"

    def test_metric_history_requires_key(self, client):
        assert client.get(f"{BASE}/metrics/history?metric_name=x").status_code == 422

    def test_performance_summary(self, client):
        _create(client)
        data = client.get(f"{BASE}/metrics/performance?hours=24").get_json()
        assert data["hours"] == 24
        assert {r["ai_job"] for r in data["items"]} == {"transcription", "summarization"}
        # processing_time, max_processing_time and peak_memory per job
        assert all(r["count"] == 3 for r in data["items"])
        assert all(r["min_value"] <= r["avg_value"] <= r["max_value"] for r in data["items"])

    def test_performance_summary_rejects_non_positive_window(self, client):
        assert client.get(f"{BASE}/metrics/performance?hours=0").status_code == 422

    def test_ai_jobs_catalog(self, client):
        data = client.get(f"{BASE}/ai-jobs").get_json()
        assert data["total"] == 12
        assert "transcription" in {j["id"] for j in data["items"]}


class TestMutationApi:

    def test_cancel_finished_run_is_409(self, client):
        run_id = _create(client).get_json()["id"]
        res = client.post(f"{BASE}/test-runs/{run_id}/cancel")
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_cancel_unknown_run_is_404(self, client):
        assert client.post(f"{BASE}/test-runs/nope/cancel").status_code == 404

    def test_delete_finalized_run(self, client):
        run_id = _create(client).get_json()["id"]
        res = client.delete(f"{BASE}/test-runs/{run_id}")
        assert res.status_code == 200
        assert db.session.get(TestRun, run_id) is None
        assert TestResult.query.filter_by(test_run_id=run_id).count() == 0

    def test_delete_unfinished_run_is_409(self, client):
        run = TestRun(name="open", user_id="u", test_type="file_upload")
        db.session.add(run)
        db.session.commit()
        res = client.delete(f"{BASE}/test-runs/{run.id}")
        assert res.status_code == 409


def test_health(client):
    assert client.get(f"{BASE}/health").get_json()["status"] == "ok"


def test_unknown_api_path_is_json_404(client):
    res = client.get(f"{BASE}/nothing-here")
    assert res.status_code == 404
    assert res.get_json()["error"] == "Not found"


class TestSourcesApi:

    def test_lists_files_by_category_and_urls(self, app, client, tmp_path, monkeypatch):
        (tmp_path / "images").mkdir()
        (tmp_path / "images" / "cat.jpg").write_bytes(b"x" * 10)
        (tmp_path / "images" / ".hidden.jpg").write_bytes(b"x")
        (tmp_path / "images" / "README.md").write_text("notes")
        (tmp_path / "audio").mkdir()
        (tmp_path / "audio" / "talk.mp3").write_bytes(b"x" * 3)
        (tmp_path / "test-urls.json").write_text(json.dumps({"news": ["https://example.com/a"]}))
        monkeypatch.setitem(app.config, "TESTBENCH_FILES_ROOT", str(tmp_path))

        data = client.get(f"{BASE}/test-sources").get_json()
        assert data["files"]["images"] == [
            {"name": "cat.jpg", "path": "images/cat.jpg", "size": 10, "media_type": "image/jpeg"},
        ]
        assert [f["path"] for f in data["files"]["audio"]] == ["audio/talk.mp3"]
        assert data["files"]["video"] == []
        assert data["urls"] == {"news": ["https://example.com/a"]}

    def test_listed_file_is_a_valid_test_source(self, app, client, tmp_path, monkeypatch):
        (tmp_path / "audio").mkdir()
        (tmp_path / "audio" / "talk.mp3").write_bytes(b"x")
        monkeypatch.setitem(app.config, "TESTBENCH_FILES_ROOT", str(tmp_path))

        source = client.get(f"{BASE}/test-sources").get_json()["files"]["audio"][0]["path"]
        res = _create(client, cases=[{"ai_job": "transcription", "test_source": source}])
        assert res.get_json()["status"] == "passed"

    def test_unreadable_url_file_gives_empty_urls(self, app, client, tmp_path, monkeypatch):
        (tmp_path / "test-urls.json").write_text("{not json")
        monkeypatch.setitem(app.config, "TESTBENCH_FILES_ROOT", str(tmp_path))
        data = client.get(f"{BASE}/test-sources").get_json()
        assert data["urls"] == {}

    def test_no_files_root_configured(self, client):
        data = client.get(f"{BASE}/test-sources").get_json()
        assert data["files_root"] is None
        assert data["files"] == {"images": [], "audio": [], "video": []}
