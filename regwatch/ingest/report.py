"""
Report builder.

Turns per-jurisdiction metrics into a Report and classifies jurisdictions:
a jurisdiction is problematic when its average score is below 0.3 or it has
fewer than 3 accessible sources. Either signal alone is enough.

Also reads and writes the JSON report artifact consumed by the curator and
the dashboard (topSources / failedSources / stateMetrics).
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Union

import jsonschema

from ..config.settings import DEFAULT_POLLER_ID
from .poller import FetchResult
from .registry import Registry, Source
from .scorer import JurisdictionMetrics, ScoredSource, aggregate

logger = logging.getLogger(__name__)

PROBLEMATIC_SCORE_THRESHOLD = 0.3
MIN_ACCESSIBLE_SOURCES = 3

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "schemas" / "poll_report.schema.json"


class ReportArtifactError(Exception):
    """Raised when a report artifact is missing or malformed."""
    pass


@dataclass(frozen=True)
class Report:
    """Outcome of one poll run. Never modified after build()."""
    total_sources_evaluated: int
    metrics_by_jurisdiction: Mapping[str, JurisdictionMetrics]
    problematic_jurisdictions: FrozenSet[str]
    generated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    run_id: str = ""
    poller_id: str = DEFAULT_POLLER_ID

    @property
    def average_score(self) -> float:
        scores = [s.score for m in self.metrics_by_jurisdiction.values() for s in m.sources]
        return sum(scores) / len(scores) if scores else 0.0

    @property
    def accessible_count(self) -> int:
        return sum(m.accessible_sources for m in self.metrics_by_jurisdiction.values())


def is_problematic(metrics: JurisdictionMetrics) -> bool:
    return (
        metrics.average_score < PROBLEMATIC_SCORE_THRESHOLD
        or metrics.accessible_sources < MIN_ACCESSIBLE_SOURCES
    )


def build(
    all_metrics: Union[Mapping[str, JurisdictionMetrics], List[JurisdictionMetrics]],
    run_id: str = "",
    poller_id: str = DEFAULT_POLLER_ID,
) -> Report:
    """
    Build a Report from per-jurisdiction metrics. Pure: no I/O.

    Args:
        all_metrics: Metrics keyed by code, or a list (keyed by metrics.code)
        run_id: Run identifier recorded on the report
        poller_id: Pipeline identifier recorded on artifact entries

    Returns:
        Report with totals and the problematic jurisdiction set
    """
    if isinstance(all_metrics, Mapping):
        by_code = dict(all_metrics)
    else:
        by_code = {m.code: m for m in all_metrics}

    problematic = frozenset(code for code, m in by_code.items() if is_problematic(m))

    return Report(
        total_sources_evaluated=sum(m.total_sources for m in by_code.values()),
        metrics_by_jurisdiction=MappingProxyType(by_code),
        problematic_jurisdictions=problematic,
        run_id=run_id,
        poller_id=poller_id,
    )


# =============================================================================
# Artifact serialization
# =============================================================================

def _source_entry(scored: ScoredSource, position: int, poller_id: str) -> Dict[str, Any]:
    result = scored.result
    return {
        "poller": poller_id,
        "state": result.source.jurisdiction,
        "url": result.source.url,
        "category": result.source.category,
        "sourceType": result.source.source_type,
        "position": position,
        "accessible": scored.accessible,
        "score": round(scored.score, 4),
        "status": result.http_status,
        "responseTime": result.latency_ms,
        "error": result.error_message,
        "checkedAt": result.observed_at.isoformat(),
    }


def to_artifact(report: Report) -> Dict[str, Any]:
    """
    Serialize a Report to the artifact shape.

    topSources holds every accessible source (best score first);
    failedSources holds every inaccessible one, in registry order.
    """
    accessible: List[Dict[str, Any]] = []
    failed: List[Dict[str, Any]] = []
    state_metrics: Dict[str, Dict[str, Any]] = {}
    latencies: List[int] = []

    for code, metrics in report.metrics_by_jurisdiction.items():
        state_metrics[code] = {
            "totalSources": metrics.total_sources,
            "accessibleSources": metrics.accessible_sources,
            "averageScore": round(metrics.average_score, 4),
            "problematic": code in report.problematic_jurisdictions,
        }
        for position, scored in enumerate(metrics.sources):
            entry = _source_entry(scored, position, report.poller_id)
            (accessible if scored.accessible else failed).append(entry)
            if scored.result.latency_ms is not None:
                latencies.append(scored.result.latency_ms)

    accessible.sort(key=lambda e: e["score"], reverse=True)

    return {
        "timestamp": report.generated_at,
        "runId": report.run_id,
        "poller": report.poller_id,
        "totalSources": report.total_sources_evaluated,
        "averageScore": round(report.average_score, 4),
        "topSources": accessible,
        "failedSources": failed,
        "summary": {
            "accessibleCount": len(accessible),
            "failedCount": len(failed),
            "averageResponseTime": round(sum(latencies) / len(latencies)) if latencies else None,
            "jurisdictionCount": len(state_metrics),
            "problematicCount": len(report.problematic_jurisdictions),
        },
        "stateMetrics": state_metrics,
        "problematicStates": sorted(report.problematic_jurisdictions),
    }


def write_report(report: Report, output_path: Union[str, Path]) -> str:
    """Write the report artifact atomically (temp file then rename)."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    content = json.dumps(to_artifact(report), indent=2)
    temp_path = output_path.with_suffix('.tmp')
    try:
        with open(temp_path, 'w') as f:
            f.write(content)
        os.replace(temp_path, output_path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise

    logger.info(f"Wrote poll report: {output_path}")
    return str(output_path)


def validate_artifact(artifact: Dict[str, Any]) -> None:
    with open(SCHEMA_PATH) as f:
        schema = json.load(f)
    try:
        jsonschema.validate(artifact, schema)
    except jsonschema.ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ReportArtifactError(f"Report artifact invalid at {location}: {e.message}") from e


def load_report_artifact(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load and validate a report artifact.

    Raises:
        ReportArtifactError: If the file is missing, not JSON, or fails the schema
    """
    path = Path(path)
    try:
        with open(path, 'r') as f:
            artifact = json.load(f)
    except FileNotFoundError as e:
        raise ReportArtifactError(f"Report artifact not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ReportArtifactError(f"Report artifact {path} is not valid JSON: {e}") from e

    validate_artifact(artifact)
    return artifact


def _scored_from_entry(entry: Dict[str, Any]) -> ScoredSource:
    checked_at = entry.get("checkedAt")
    observed_at = (
        datetime.fromisoformat(checked_at.replace('Z', '+00:00'))
        if checked_at else datetime.now(timezone.utc)
    )
    source = Source(
        url=entry["url"],
        category=entry.get("category", "news"),
        jurisdiction=entry["state"],
        source_type=entry.get("sourceType", "webpage"),
    )
    result = FetchResult(
        source=source,
        http_status=entry.get("status"),
        reachable=entry["accessible"],
        latency_ms=entry.get("responseTime"),
        error_message=entry.get("error"),
        observed_at=observed_at,
    )
    return ScoredSource(result=result, score=float(entry["score"]), accessible=entry["accessible"])


def metrics_from_artifact(
    artifact: Dict[str, Any],
    poller_id: Optional[str] = None,
    registry: Optional[Registry] = None,
) -> Dict[str, JurisdictionMetrics]:
    """
    Re-derive per-jurisdiction metrics from a saved artifact.

    Args:
        artifact: Parsed report artifact
        poller_id: Only count entries tagged with this pipeline id (None = all)
        registry: If given, its jurisdictions without entries get empty metrics

    Returns:
        Mapping of code -> JurisdictionMetrics
    """
    entries = list(artifact.get("topSources", [])) + list(artifact.get("failedSources", []))
    if poller_id is not None:
        entries = [e for e in entries if e.get("poller") == poller_id]

    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for entry in entries:
        grouped.setdefault(entry["state"], []).append(entry)

    codes = list(grouped)
    if registry is not None:
        codes.extend(code for code in registry if code not in grouped)

    metrics: Dict[str, JurisdictionMetrics] = {}
    for code in codes:
        state_entries = sorted(grouped.get(code, []), key=lambda e: e.get("position", 0))
        metrics[code] = aggregate(code, [_scored_from_entry(e) for e in state_entries])
    return metrics
