"""Alert generation for the poll pipeline.

Generates alerts.json with:
- Problematic jurisdictions (low score or too few accessible sources)
- Jurisdictions with no sources at all
- Sources newly DEGRADED or DOWN
- Individual fetch failures
"""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .report import Report

logger = logging.getLogger(__name__)

# FAIL when more than this share of polled jurisdictions is problematic
PROBLEMATIC_SHARE_FAIL = 0.5


class AlertSeverity(Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class AlertType(Enum):
    PROBLEMATIC_JURISDICTION = "PROBLEMATIC_JURISDICTION"
    EMPTY_JURISDICTION = "EMPTY_JURISDICTION"
    SOURCE_DEGRADED = "SOURCE_DEGRADED"
    SOURCE_DOWN = "SOURCE_DOWN"
    FETCH_FAILURE = "FETCH_FAILURE"


@dataclass
class Alert:
    """Individual alert."""
    alert_type: str
    severity: str
    message: str
    url: Optional[str] = None
    jurisdiction: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None}


@dataclass
class AlertReport:
    """Collection of alerts from a poll run."""
    run_id: str
    generated_at: str
    status: str  # PASS, WARN, FAIL
    alerts: List[Alert] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "generated_at": self.generated_at,
            "status": self.status,
            "summary": self.summary,
            "alerts": [a.to_dict() for a in self.alerts]
        }


def generate_alerts(
    report: Report,
    newly_problematic: Optional[Dict[str, List[str]]] = None,
    run_id: str = ""
) -> AlertReport:
    """
    Generate alerts from a poll report and health transitions.

    Args:
        report: Report for the current run
        newly_problematic: Dict with 'newly_degraded' and 'newly_down' URL lists
        run_id: Run identifier

    Returns:
        AlertReport with all generated alerts
    """
    newly_problematic = newly_problematic or {}
    newly_degraded = newly_problematic.get("newly_degraded", [])
    newly_down = newly_problematic.get("newly_down", [])
    alerts = []

    # 1. Jurisdiction-level alerts
    for code in sorted(report.problematic_jurisdictions):
        metrics = report.metrics_by_jurisdiction[code]
        if metrics.total_sources == 0:
            alerts.append(Alert(
                alert_type=AlertType.EMPTY_JURISDICTION.value,
                severity=AlertSeverity.INFO.value,
                message=f"No sources configured for {code}",
                jurisdiction=code
            ))
            continue

        alerts.append(Alert(
            alert_type=AlertType.PROBLEMATIC_JURISDICTION.value,
            severity=AlertSeverity.WARNING.value,
            message=(f"{code}: {metrics.accessible_sources}/{metrics.total_sources} accessible, "
                     f"avg score {metrics.average_score:.3f}"),
            jurisdiction=code,
            details={
                "total_sources": metrics.total_sources,
                "accessible_sources": metrics.accessible_sources,
                "average_score": round(metrics.average_score, 4)
            }
        ))

    # 2. Health transitions
    for url in newly_degraded:
        alerts.append(Alert(
            alert_type=AlertType.SOURCE_DEGRADED.value,
            severity=AlertSeverity.WARNING.value,
            message=f"Source degraded: {url}",
            url=url
        ))

    for url in newly_down:
        alerts.append(Alert(
            alert_type=AlertType.SOURCE_DOWN.value,
            severity=AlertSeverity.CRITICAL.value,
            message=f"Source is DOWN: {url}",
            url=url
        ))

    # 3. Fetch failures not already covered by a health transition
    for code, metrics in report.metrics_by_jurisdiction.items():
        for scored in metrics.sources:
            if scored.accessible:
                continue
            url = scored.result.source.url
            if url in newly_degraded or url in newly_down:
                continue
            error = scored.result.error_message or "unknown error"
            alerts.append(Alert(
                alert_type=AlertType.FETCH_FAILURE.value,
                severity=AlertSeverity.INFO.value,
                message=f"Fetch failed for {url}: {error[:100]}",
                url=url,
                jurisdiction=code,
                details={"error": error, "status": scored.result.http_status}
            ))

    status = determine_status(alerts, report)

    summary = {
        "total_alerts": len(alerts),
        "critical": sum(1 for a in alerts if a.severity == AlertSeverity.CRITICAL.value),
        "warning": sum(1 for a in alerts if a.severity == AlertSeverity.WARNING.value),
        "info": sum(1 for a in alerts if a.severity == AlertSeverity.INFO.value),
        "jurisdictions_polled": len(report.metrics_by_jurisdiction),
        "jurisdictions_problematic": len(report.problematic_jurisdictions)
    }

    return AlertReport(
        run_id=run_id,
        generated_at=datetime.now(timezone.utc).isoformat(),
        status=status,
        alerts=alerts,
        summary=summary
    )


def determine_status(alerts: List[Alert], report: Report) -> str:
    """
    Determine overall alert status.

    FAIL conditions:
    - Any SOURCE_DOWN alert
    - More than half of polled jurisdictions problematic

    WARN conditions:
    - Any problematic jurisdiction
    - Any SOURCE_DEGRADED alert

    Otherwise: PASS
    """
    down_sources = sum(1 for a in alerts if a.alert_type == AlertType.SOURCE_DOWN.value)
    degraded_sources = sum(1 for a in alerts if a.alert_type == AlertType.SOURCE_DEGRADED.value)

    polled = len(report.metrics_by_jurisdiction)
    problematic = len(report.problematic_jurisdictions)

    if down_sources > 0:
        return "FAIL"
    if polled and problematic / polled > PROBLEMATIC_SHARE_FAIL:
        return "FAIL"

    if problematic > 0:
        return "WARN"
    if degraded_sources > 0:
        return "WARN"

    return "PASS"


def write_alerts(alert_report: AlertReport, output_path: str) -> None:
    """Write alert report to JSON file."""
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    with open(output_path, 'w') as f:
        json.dump(alert_report.to_dict(), f, indent=2)
    logger.info(f"Wrote alerts: {output_path}")


def should_exit_nonzero(alert_report: AlertReport) -> bool:
    """Check if pipeline should exit with nonzero status (for cron alerts)."""
    return alert_report.status == "FAIL"
