"""
Source health tracking across poll runs.

Tracks per-URL success/failure history and computes health status.
A single poll run never retries; health is how repeated failures show up.
"""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .scorer import ScoredSource

logger = logging.getLogger(__name__)

# Health status thresholds
CONSECUTIVE_FAILURES_DEGRADED = 3
CONSECUTIVE_FAILURES_DOWN = 7

# Rolling score window
ROLLING_AVERAGE_RUNS = 7


@dataclass
class SourceHealth:
    """Health status for a single source URL."""
    url: str
    jurisdiction: str = ""
    category: str = ""
    last_success_at: Optional[str] = None
    last_failure_at: Optional[str] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    score_history: List[float] = field(default_factory=list)  # Last N runs
    avg_score_last_7: float = 0.0
    status: str = "OK"  # OK, DEGRADED, DOWN

    def update_status(self):
        if self.consecutive_failures >= CONSECUTIVE_FAILURES_DOWN:
            self.status = "DOWN"
        elif self.consecutive_failures >= CONSECUTIVE_FAILURES_DEGRADED:
            self.status = "DEGRADED"
        else:
            self.status = "OK"

    def _push_score(self, score: float):
        self.score_history.append(score)
        if len(self.score_history) > ROLLING_AVERAGE_RUNS:
            self.score_history = self.score_history[-ROLLING_AVERAGE_RUNS:]
        self.avg_score_last_7 = sum(self.score_history) / len(self.score_history)

    def record_success(self, score: float, timestamp: Optional[datetime] = None):
        """Record an accessible fetch."""
        if timestamp is None:
            timestamp = datetime.now(timezone.utc)

        self.last_success_at = timestamp.isoformat()
        self.consecutive_failures = 0
        self.last_error = None
        self._push_score(score)
        self.update_status()

    def record_failure(self, error: str, timestamp: Optional[datetime] = None):
        """Record an inaccessible fetch."""
        if timestamp is None:
            timestamp = datetime.now(timezone.utc)

        self.last_failure_at = timestamp.isoformat()
        self.consecutive_failures += 1
        self.last_error = error
        self._push_score(0.0)
        self.update_status()


@dataclass
class HealthTracker:
    """Tracks health for all sources across runs."""
    sources: Dict[str, SourceHealth] = field(default_factory=dict)
    last_updated_at: Optional[str] = None

    def get_or_create(self, url: str, jurisdiction: str = "", category: str = "") -> SourceHealth:
        if url not in self.sources:
            self.sources[url] = SourceHealth(url=url, jurisdiction=jurisdiction, category=category)
        return self.sources[url]

    def record_results(self, scored: Iterable[ScoredSource]):
        """Fold one run's scored sources into the history."""
        for item in scored:
            source = item.result.source
            health = self.get_or_create(source.url, source.jurisdiction, source.category)
            if item.accessible:
                health.record_success(item.score, item.result.observed_at)
            else:
                health.record_failure(item.result.error_message or "unknown error", item.result.observed_at)

    def prune(self, active_urls: Iterable[str]) -> List[str]:
        """Drop history for URLs no longer in the registry; returns the dropped URLs."""
        active = set(active_urls)
        dropped = [url for url in self.sources if url not in active]
        for url in dropped:
            del self.sources[url]
        return dropped

    def get_summary(self) -> Dict[str, Any]:
        statuses = {"OK": 0, "DEGRADED": 0, "DOWN": 0}
        for source in self.sources.values():
            statuses[source.status] = statuses.get(source.status, 0) + 1

        degraded_sources = [s.url for s in self.sources.values() if s.status == "DEGRADED"]
        down_sources = [s.url for s in self.sources.values() if s.status == "DOWN"]

        return {
            "total_sources": len(self.sources),
            "status_counts": statuses,
            "degraded_sources": degraded_sources,
            "down_sources": down_sources,
            "overall_status": "DOWN" if down_sources else ("DEGRADED" if degraded_sources else "OK")
        }

    def get_newly_degraded_or_down(self, previous: Optional["HealthTracker"] = None) -> Dict[str, List[str]]:
        """Compare to previous state and find newly degraded/down sources."""
        newly_degraded = []
        newly_down = []

        for url, health in self.sources.items():
            prev_health = previous.sources.get(url) if previous else None
            prev_status = prev_health.status if prev_health else "OK"

            if health.status == "DEGRADED" and prev_status == "OK":
                newly_degraded.append(url)
            elif health.status == "DOWN" and prev_status in ["OK", "DEGRADED"]:
                newly_down.append(url)

        return {
            "newly_degraded": newly_degraded,
            "newly_down": newly_down
        }

    def to_dict(self) -> Dict:
        return {
            "last_updated_at": self.last_updated_at,
            "sources": {k: asdict(v) for k, v in self.sources.items()},
            "summary": self.get_summary()
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "HealthTracker":
        tracker = cls()
        tracker.last_updated_at = data.get("last_updated_at")

        for url, source_data in data.get("sources", {}).items():
            tracker.sources[url] = SourceHealth(
                url=source_data.get("url", url),
                jurisdiction=source_data.get("jurisdiction", ""),
                category=source_data.get("category", ""),
                last_success_at=source_data.get("last_success_at"),
                last_failure_at=source_data.get("last_failure_at"),
                consecutive_failures=source_data.get("consecutive_failures", 0),
                last_error=source_data.get("last_error"),
                score_history=source_data.get("score_history", []),
                avg_score_last_7=source_data.get("avg_score_last_7", 0.0),
                status=source_data.get("status", "OK")
            )

        return tracker


def get_health_file_path(runs_dir: str = "runs") -> str:
    """Get path to sources_health.json in <runs_dir>/_meta/."""
    meta_dir = Path(runs_dir) / "_meta"
    meta_dir.mkdir(parents=True, exist_ok=True)
    return str(meta_dir / "sources_health.json")


def load_health_tracker(runs_dir: str = "runs") -> HealthTracker:
    """Load health tracker from disk, or create new one."""
    health_path = get_health_file_path(runs_dir)

    if os.path.exists(health_path):
        try:
            with open(health_path, 'r') as f:
                data = json.load(f)
            return HealthTracker.from_dict(data)
        except (json.JSONDecodeError, KeyError) as e:
            logger.warning(f"Could not load health tracker: {e}")
            return HealthTracker()

    return HealthTracker()


def save_health_tracker(tracker: HealthTracker, runs_dir: str = "runs"):
    tracker.last_updated_at = datetime.now(timezone.utc).isoformat()
    health_path = get_health_file_path(runs_dir)

    with open(health_path, 'w') as f:
        json.dump(tracker.to_dict(), f, indent=2)
