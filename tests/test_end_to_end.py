"""
End-to-end poll cycle: registry file -> poll -> report -> alerts -> curation.

Uses a fake fetcher so no network access happens.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from regwatch.config.settings import PollerSettings
from regwatch.ingest import registry as registry_store
from regwatch.ingest.coordinator import run_poll_cycle
from regwatch.ingest.curator import apply_curation
from regwatch.ingest.export import read_export
from regwatch.ingest.notify import NotificationError
from regwatch.ingest.poller import TIMEOUT_ERROR, FetchResult, failed_result
from regwatch.ingest.registry import ConfigCorrupt, CuratorWriteConflict, Jurisdiction, registry_write_lock
from regwatch.run_utils import ALERTS_ARTIFACT, REPORT_ARTIFACT

AR_OK = "https://ar.example/news"
AR_SLOW = "https://ar.example/rules"
CO_URLS = ["https://co.example/news", "https://co.example/rules", "https://co.example/hemp"]


async def fake_fetcher(source):
    if source.url == AR_SLOW:
        return failed_result(source, TIMEOUT_ERROR)
    return FetchResult(
        source=source,
        http_status=200,
        reachable=True,
        latency_ms=42,
        error_message=None,
        observed_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def settings(tmp_path):
    registry_path = tmp_path / "config" / "sources.yaml"
    registry_store.save({
        "AR": Jurisdiction.from_urls("AR", news=[AR_OK], regulation=[AR_SLOW],
                                     agency="https://www.arkansas.gov/amcc/",
                                     agency_name="Arkansas Medical Marijuana Commission"),
        "CO": Jurisdiction.from_urls("CO", news=CO_URLS[:1], regulation=CO_URLS[1:]),
    }, registry_path)
    return PollerSettings(
        registry_path=str(registry_path),
        export_path=str(tmp_path / "exports" / "all-poller-sources.csv"),
        runs_dir=str(tmp_path / "runs"),
        deadline_seconds=5.0,
    )


class TestPollCycle:
    def test_report_written(self, settings):
        result = run_poll_cycle(settings, run_id="RUN_20260101_060000", fetcher=fake_fetcher)

        with open(result.report_path) as f:
            artifact = json.load(f)
        assert artifact["runId"] == "RUN_20260101_060000"
        assert artifact["totalSources"] == 5
        assert artifact["problematicStates"] == ["AR"]
        assert [e["url"] for e in artifact["failedSources"]] == [AR_SLOW]
        assert artifact["failedSources"][0]["error"] == TIMEOUT_ERROR

    def test_problematic_classification(self, settings):
        """AR: one 200 and one timeout -> avg 0.5, 1 accessible -> problematic."""
        result = run_poll_cycle(settings, fetcher=fake_fetcher)

        ar = result.report.metrics_by_jurisdiction["AR"]
        assert ar.average_score == 0.5
        assert ar.accessible_sources == 1
        assert result.report.problematic_jurisdictions == frozenset({"AR"})

    def test_alerts_and_health_written(self, settings, tmp_path):
        result = run_poll_cycle(settings, run_id="RUN_20260101_060000", fetcher=fake_fetcher)

        run_dir = tmp_path / "runs" / "RUN_20260101_060000"
        assert (run_dir / REPORT_ARTIFACT).exists()
        assert (run_dir / ALERTS_ARTIFACT).exists()
        assert (tmp_path / "runs" / "_meta" / "sources_health.json").exists()
        assert result.alert_report.status == "WARN"

    def test_registry_untouched_without_curation(self, settings):
        before = registry_store.load(settings.registry_path)

        result = run_poll_cycle(settings, fetcher=fake_fetcher)

        assert result.curation is None
        assert registry_store.load(settings.registry_path) == before

    def test_auto_curate_empties_problematic(self, settings):
        result = run_poll_cycle(settings, fetcher=fake_fetcher, auto_curate=True)

        registry = registry_store.load(settings.registry_path)
        assert registry["AR"].is_empty
        assert len(registry["CO"].sources) == 3
        assert result.curation.diff.removed_count == 2

        df = read_export(settings.export_path)
        assert (df["state"] == "AR").sum() == 0
        assert len(df) == 3

    def test_second_curation_is_noop(self, settings):
        run_poll_cycle(settings, fetcher=fake_fetcher, auto_curate=True)
        before = registry_store.load(settings.registry_path)

        result = run_poll_cycle(settings, fetcher=fake_fetcher, auto_curate=True)

        # AR is now empty and therefore still problematic, but nothing is left to remove
        assert result.report.metrics_by_jurisdiction["AR"].total_sources == 0
        assert result.curation.diff.is_empty
        assert registry_store.load(settings.registry_path) == before

    def test_corrupt_registry_aborts_before_polling(self, settings):
        with open(settings.registry_path, 'w') as f:
            f.write("AR: {newsPages: [\n")
        calls = []

        async def fetcher(source):
            calls.append(source)
            return await fake_fetcher(source)

        with pytest.raises(ConfigCorrupt):
            run_poll_cycle(settings, fetcher=fetcher)
        assert calls == []

    def test_notification_failure_does_not_abort(self, settings):
        with patch("regwatch.ingest.coordinator.send_broken_links_email",
                   side_effect=NotificationError("provider down")):
            result = run_poll_cycle(settings, fetcher=fake_fetcher, notify=True)

        assert result.notification_id is None
        assert result.report.total_sources_evaluated == 5

    def test_notification_sent(self, settings):
        with patch("regwatch.ingest.coordinator.send_broken_links_email", return_value="msg_1") as send:
            result = run_poll_cycle(settings, fetcher=fake_fetcher, notify=True, recipients=["ops@example.com"])

        assert result.notification_id == "msg_1"
        send.assert_called_once_with(result.report, ["ops@example.com"])


class TestPollLock:
    """A poll holds the registry lock shared from load until its artifacts are written."""

    def test_poll_refused_while_curation_holds_lock(self, settings):
        calls = []

        async def fetcher(source):
            calls.append(source)
            return await fake_fetcher(source)

        with registry_write_lock(settings.registry_path):
            with pytest.raises(CuratorWriteConflict):
                run_poll_cycle(settings, run_id="RUN_20260101_060000", fetcher=fetcher)

        assert calls == []
        assert not (Path(settings.runs_dir) / "RUN_20260101_060000").exists()

    def test_curation_refused_during_poll(self, settings):
        before = registry_store.load(settings.registry_path)
        conflicts = []

        async def fetcher(source):
            if not conflicts:
                try:
                    apply_curation(settings.registry_path, ["CO"], settings.export_path,
                                   snapshot_dir=Path(settings.runs_dir) / "snapshots")
                except CuratorWriteConflict as e:
                    conflicts.append(e)
            return await fake_fetcher(source)

        result = run_poll_cycle(settings, fetcher=fetcher)

        assert len(conflicts) == 1
        assert registry_store.load(settings.registry_path) == before
        assert result.report.total_sources_evaluated == 5

    def test_lock_released_before_auto_curate(self, settings):
        result = run_poll_cycle(settings, fetcher=fake_fetcher, auto_curate=True)

        assert result.curation is not None
        with registry_write_lock(settings.registry_path):
            pass
