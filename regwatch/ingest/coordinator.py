"""
Poll cycle coordinator.

run_poll_cycle() is the single entry point a scheduler calls. It:
- loads the registry under a shared lock (ConfigCorrupt aborts before any fetch)
- polls every source concurrently
- scores and aggregates per jurisdiction
- builds and writes the report artifact
- updates source health and writes alerts
- optionally e-mails broken links and curates problematic jurisdictions
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from ..config.secrets import MissingAPIKeyError
from ..config.settings import PollerSettings, get_poller_settings
from ..run_utils import ALERTS_ARTIFACT, REPORT_ARTIFACT, make_run_id
from . import registry as registry_store
from .alerts import AlertReport, generate_alerts, write_alerts
from .curator import CurationOutcome, apply_curation
from .health import HealthTracker, load_health_tracker, save_health_tracker
from .notify import NotificationError, send_broken_links_email
from .poller import Fetcher, FetchResult, PollOptions, run_poll
from .registry import registry_write_lock
from .report import Report, build, write_report
from .scorer import JurisdictionMetrics, aggregate, score_all

logger = logging.getLogger(__name__)


@dataclass
class PollCycleResult:
    run_id: str
    run_dir: str
    report: Report
    alert_report: AlertReport
    report_path: str
    curation: Optional[CurationOutcome] = None
    notification_id: Optional[str] = None


def score_results(
    results: Dict[str, List[FetchResult]],
    settings: PollerSettings,
) -> Dict[str, JurisdictionMetrics]:
    return {
        code: aggregate(code, score_all(fetch_results, settings.markers))
        for code, fetch_results in results.items()
    }


def update_health(report: Report, registry: registry_store.Registry, runs_dir: str) -> Dict[str, List[str]]:
    """Fold the run into source health; returns newly degraded/down URLs."""
    tracker = load_health_tracker(runs_dir)
    previous = HealthTracker.from_dict(tracker.to_dict())

    for metrics in report.metrics_by_jurisdiction.values():
        tracker.record_results(metrics.sources)

    active = [s.url for j in registry.values() for s in j.sources]
    dropped = tracker.prune(active)
    if dropped:
        logger.info(f"Dropped health history for {len(dropped)} removed sources")

    save_health_tracker(tracker, runs_dir)
    return tracker.get_newly_degraded_or_down(previous)


def run_poll_cycle(
    settings: Optional[PollerSettings] = None,
    run_id: Optional[str] = None,
    fetcher: Optional[Fetcher] = None,
    notify: bool = False,
    recipients: Optional[List[str]] = None,
    auto_curate: bool = False,
) -> PollCycleResult:
    """
    Run one full poll cycle.

    Args:
        settings: Resolved settings (default: config/poller.yaml)
        run_id: Run identifier (default: RUN_<utc timestamp>)
        fetcher: Optional replacement for the HTTP fetch, for tests
        notify: E-mail a broken-link report when any source failed
        recipients: Notification recipients (default: the admin address)
        auto_curate: Empty problematic jurisdictions after the report is written

    Returns:
        PollCycleResult with the report and where it was written

    Raises:
        ConfigCorrupt: The registry could not be loaded
        CuratorWriteConflict: A curation holds the registry lock, or auto_curate
            found the lock held by another run
    """
    settings = settings or get_poller_settings()
    run_id = run_id or make_run_id()

    run_dir = Path(settings.runs_dir) / run_id

    # Curators are locked out until artifacts and health match the polled registry
    with registry_write_lock(settings.registry_path, shared=True):
        registry = registry_store.load(settings.registry_path)
        logger.info(f"[{run_id}] Loaded {len(registry)} jurisdictions from {settings.registry_path}")

        options = PollOptions.from_settings(settings)
        results = run_poll(registry, options, fetcher)

        metrics = score_results(results, settings)
        report = build(metrics, run_id=run_id, poller_id=settings.poller_id)
        report_path = write_report(report, run_dir / REPORT_ARTIFACT)

        newly_problematic = update_health(report, registry, settings.runs_dir)
        alert_report = generate_alerts(report, newly_problematic, run_id=run_id)
        write_alerts(alert_report, str(run_dir / ALERTS_ARTIFACT))

    logger.info(
        f"[{run_id}] {report.total_sources_evaluated} sources, "
        f"{report.accessible_count} accessible, "
        f"{len(report.problematic_jurisdictions)} problematic jurisdictions, "
        f"alerts {alert_report.status}"
    )

    outcome = PollCycleResult(
        run_id=run_id,
        run_dir=str(run_dir),
        report=report,
        alert_report=alert_report,
        report_path=report_path,
    )

    if notify:
        try:
            outcome.notification_id = send_broken_links_email(report, recipients)
        except (MissingAPIKeyError, NotificationError) as e:
            logger.warning(f"[{run_id}] Broken-link notification not sent: {e}")

    if auto_curate and report.problematic_jurisdictions:
        outcome.curation = apply_curation(
            settings.registry_path,
            sorted(report.problematic_jurisdictions),
            settings.export_path,
            snapshot_dir=Path(settings.runs_dir) / "_meta" / "registry_snapshots",
            poller_id=settings.poller_id,
        )

    return outcome
