"""
Tests for the read-only dashboard API.
"""

import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from regwatch.api.server import app
from regwatch.ingest.poller import FetchResult
from regwatch.ingest.registry import Source
from regwatch.ingest.report import build, write_report
from regwatch.ingest.scorer import aggregate, score
from regwatch.run_utils import ALERTS_ARTIFACT, REPORT_ARTIFACT


def _metrics(code, statuses):
    scored = []
    for i, status in enumerate(statuses):
        reachable = status is not None and 200 <= status <= 399
        scored.append(score(FetchResult(
            source=Source(f"https://{code.lower()}.example/{i}", "news", code),
            http_status=status,
            reachable=reachable,
            latency_ms=15,
            error_message=None if reachable else "timeout",
            observed_at=datetime.now(timezone.utc),
        )))
    return aggregate(code, scored)


@pytest.fixture
def runs_dir(tmp_path, monkeypatch):
    runs = tmp_path / "runs"
    monkeypatch.setenv("REGWATCH_RUNS_DIR", str(runs))

    older = build([_metrics("CO", [200, 200, 200])], run_id="RUN_20260101_060000")
    write_report(older, runs / "RUN_20260101_060000" / REPORT_ARTIFACT)

    latest = build([_metrics("AR", [None, 200]), _metrics("CO", [200, 200, 200])], run_id="RUN_20260102_060000")
    write_report(latest, runs / "RUN_20260102_060000" / REPORT_ARTIFACT)
    with open(runs / "RUN_20260102_060000" / ALERTS_ARTIFACT, 'w') as f:
        json.dump({"status": "WARN"}, f)
    return runs


@pytest.fixture
def client():
    return TestClient(app)


class TestStatus:
    def test_status(self, client, runs_dir):
        data = client.get("/api/status").json()

        assert data["connected"] is True
        assert data["runCount"] == 2
        assert data["latestRunId"] == "RUN_20260102_060000"
        assert data["problematicStates"] == ["AR"]

    def test_status_without_runs(self, client, tmp_path, monkeypatch):
        monkeypatch.setenv("REGWATCH_RUNS_DIR", str(tmp_path / "empty"))

        data = client.get("/api/status").json()

        assert data["runCount"] == 0
        assert data["latestRunId"] is None

    def test_status_invalid_latest_artifact_is_500(self, client, runs_dir):
        (runs_dir / "RUN_20260103_060000").mkdir()
        with open(runs_dir / "RUN_20260103_060000" / REPORT_ARTIFACT, 'w') as f:
            f.write("{not json")

        assert client.get("/api/status").status_code == 500


class TestRuns:
    def test_lists_newest_first(self, client, runs_dir):
        runs = client.get("/api/runs").json()

        assert [r["run_id"] for r in runs] == ["RUN_20260102_060000", "RUN_20260101_060000"]
        assert runs[0]["alert_status"] == "WARN"
        assert runs[1]["missing"] == [ALERTS_ARTIFACT]

    def test_limit(self, client, runs_dir):
        assert len(client.get("/api/runs?limit=1").json()) == 1


class TestReports:
    def test_latest_report(self, client, runs_dir):
        data = client.get("/api/report/latest").json()

        assert data["runId"] == "RUN_20260102_060000"
        assert data["totalSources"] == 5

    def test_latest_report_missing(self, client, tmp_path, monkeypatch):
        monkeypatch.setenv("REGWATCH_RUNS_DIR", str(tmp_path / "empty"))

        assert client.get("/api/report/latest").status_code == 404

    def test_jurisdiction_detail(self, client, runs_dir):
        data = client.get("/api/report/latest/ar").json()

        assert data["state"] == "AR"
        assert data["problematic"] is True
        assert data["metrics"]["accessibleSources"] == 1
        assert [s["url"] for s in data["sources"]] == ["https://ar.example/0", "https://ar.example/1"]

    def test_jurisdiction_not_in_report(self, client, runs_dir):
        assert client.get("/api/report/latest/WY").status_code == 404

    def test_report_by_run_id(self, client, runs_dir):
        data = client.get("/api/report/RUN_20260101_060000").json()

        assert data["problematicStates"] == []

    def test_unknown_run(self, client, runs_dir):
        assert client.get("/api/report/RUN_19990101_000000").status_code == 404

    def test_invalid_artifact_is_500(self, client, runs_dir):
        (runs_dir / "RUN_20260103_060000").mkdir()
        with open(runs_dir / "RUN_20260103_060000" / REPORT_ARTIFACT, 'w') as f:
            json.dump({"timestamp": "x"}, f)

        assert client.get("/api/report/RUN_20260103_060000").status_code == 500
