"""
Tests for report building, jurisdiction classification and the report artifact.
"""

import json
from datetime import datetime, timezone

import pytest

from regwatch.ingest.poller import FetchResult
from regwatch.ingest.registry import Jurisdiction, Source
from regwatch.ingest.report import (
    MIN_ACCESSIBLE_SOURCES,
    PROBLEMATIC_SCORE_THRESHOLD,
    ReportArtifactError,
    build,
    is_problematic,
    load_report_artifact,
    metrics_from_artifact,
    to_artifact,
    write_report,
)
from regwatch.ingest.scorer import JurisdictionMetrics, aggregate, score


def _metrics(code, total, accessible, average):
    return JurisdictionMetrics(code=code, total_sources=total, accessible_sources=accessible,
                               average_score=average)


def _scored_sources(code, statuses):
    """Score one FetchResult per status (None = timeout)."""
    scored = []
    for i, status in enumerate(statuses):
        reachable = status is not None and 200 <= status <= 399
        result = FetchResult(
            source=Source(f"https://{code.lower()}.example/{i}", "news" if i % 2 else "regulation", code),
            http_status=status,
            reachable=reachable,
            latency_ms=100 if status is not None else None,
            error_message=None if reachable else ("timeout" if status is None else f"HTTP {status}"),
            observed_at=datetime.now(timezone.utc),
        )
        scored.append(score(result))
    return scored


class TestClassification:
    """Problematic iff average < 0.3 or fewer than 3 accessible sources."""

    def test_thresholds(self):
        assert PROBLEMATIC_SCORE_THRESHOLD == 0.3
        assert MIN_ACCESSIBLE_SOURCES == 3

    @pytest.mark.parametrize("total,accessible,average,expected", [
        (10, 5, 0.25, True),    # low score only
        (10, 2, 0.8, True),     # too few accessible only
        (10, 3, 0.3, False),    # both exactly at threshold
        (10, 10, 1.0, False),
        (0, 0, 0.0, True),      # empty jurisdiction
    ])
    def test_is_problematic(self, total, accessible, average, expected):
        assert is_problematic(_metrics("AR", total, accessible, average)) is expected

    def test_build_flags_problematic(self):
        report = build([
            _metrics("AR", 10, 5, 0.25),
            _metrics("CA", 10, 2, 0.8),
            _metrics("CO", 10, 3, 0.3),
        ])

        assert report.problematic_jurisdictions == frozenset({"AR", "CA"})

    def test_build_accepts_mapping(self):
        report = build({"US": _metrics("US", 4, 4, 1.0)})

        assert report.problematic_jurisdictions == frozenset()
        assert list(report.metrics_by_jurisdiction) == ["US"]


class TestReportTotals:
    def test_total_is_sum_of_jurisdiction_totals(self):
        report = build([_metrics("AR", 3, 1, 0.3), _metrics("CO", 7, 7, 1.0), _metrics("US", 0, 0, 0.0)])

        assert report.total_sources_evaluated == 10

    def test_report_is_read_only(self):
        report = build([_metrics("AR", 3, 1, 0.3)])

        with pytest.raises(TypeError):
            report.metrics_by_jurisdiction["CO"] = _metrics("CO", 1, 1, 1.0)

    def test_average_and_accessible_count(self):
        report = build([aggregate("AR", _scored_sources("AR", [200, 301, None, 404]))])

        assert report.accessible_count == 2
        assert report.average_score == pytest.approx(0.375)


class TestArtifact:
    """Tests for the JSON report artifact."""

    def _report(self):
        return build([
            aggregate("AR", _scored_sources("AR", [200, None])),
            aggregate("CO", _scored_sources("CO", [200, 301, 200])),
        ], run_id="RUN_20260101_000000", poller_id="cannabis-hemp-poller")

    def test_top_and_failed_sources(self):
        artifact = to_artifact(self._report())

        assert artifact["totalSources"] == 5
        assert len(artifact["topSources"]) == 4
        assert len(artifact["failedSources"]) == 1
        scores = [e["score"] for e in artifact["topSources"]]
        assert scores == sorted(scores, reverse=True)

        failed = artifact["failedSources"][0]
        assert failed["state"] == "AR"
        assert failed["error"] == "timeout"
        assert failed["status"] is None
        assert failed["position"] == 1

    def test_state_metrics_and_problematic(self):
        artifact = to_artifact(self._report())

        assert artifact["stateMetrics"]["AR"]["accessibleSources"] == 1
        assert artifact["stateMetrics"]["CO"]["averageScore"] == pytest.approx(0.8333, abs=1e-4)
        assert artifact["problematicStates"] == ["AR"]
        assert artifact["summary"]["failedCount"] == 1
        assert artifact["runId"] == "RUN_20260101_000000"

    def test_write_and_load(self, tmp_path):
        path = write_report(self._report(), tmp_path / "run" / "poll_report.json")

        artifact = load_report_artifact(path)

        assert artifact["poller"] == "cannabis-hemp-poller"
        assert not (tmp_path / "run" / "poll_report.tmp").exists()

    def test_metrics_round_trip(self, tmp_path):
        """Metrics re-derived from the artifact classify the same way."""
        report = self._report()
        artifact = load_report_artifact(write_report(report, tmp_path / "poll_report.json"))

        metrics = metrics_from_artifact(artifact)
        rebuilt = build(metrics)

        assert rebuilt.problematic_jurisdictions == report.problematic_jurisdictions
        assert rebuilt.total_sources_evaluated == report.total_sources_evaluated
        assert [s.source.url for s in metrics["AR"].sources] == [
            s.source.url for s in report.metrics_by_jurisdiction["AR"].sources
        ]

    def test_metrics_filtered_by_poller(self):
        artifact = to_artifact(self._report())
        artifact["topSources"][0]["poller"] = "other-poller"

        metrics = metrics_from_artifact(artifact, poller_id="cannabis-hemp-poller")

        assert sum(m.total_sources for m in metrics.values()) == 4

    def test_registry_adds_empty_jurisdictions(self):
        artifact = to_artifact(self._report())
        registry = {"NV": Jurisdiction.from_urls("NV")}

        metrics = metrics_from_artifact(artifact, registry=registry)

        assert metrics["NV"].total_sources == 0
        assert "NV" in build(metrics).problematic_jurisdictions

    def test_missing_artifact(self, tmp_path):
        with pytest.raises(ReportArtifactError, match="not found"):
            load_report_artifact(tmp_path / "missing.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "poll_report.json"
        path.write_text("{not json")

        with pytest.raises(ReportArtifactError, match="not valid JSON"):
            load_report_artifact(path)

    def test_schema_violation(self, tmp_path):
        path = tmp_path / "poll_report.json"
        artifact = to_artifact(self._report())
        del artifact["failedSources"]
        path.write_text(json.dumps(artifact))

        with pytest.raises(ReportArtifactError, match="failedSources"):
            load_report_artifact(path)
