"""
Poller configuration.

Loads ``config/poller.yaml`` and merges it over built-in defaults.

Usage:
    from regwatch.config.settings import get_poller_settings

    settings = get_poller_settings()
    settings.timeout_seconds  # 10.0 unless overridden
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parent.parent.parent

# Defaults (overridable by config/poller.yaml)
DEFAULT_POLLER_ID = "cannabis-hemp-poller"
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; RegwatchSourcePoller/1.0)"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_WORKERS = 10
DEFAULT_DEADLINE_SECONDS = 300.0
DEFAULT_MARKER_PENALTY = 0.5

DEFAULT_REGISTRY_PATH = "config/sources.yaml"
DEFAULT_EXPORT_PATH = "exports/all-poller-sources.csv"
DEFAULT_RUNS_DIR = "runs"


@dataclass
class ContentMarkers:
    """Per-category keyword markers used to discount irrelevant pages.

    An empty keyword list for a category disables the check for it.
    """
    news: List[str] = field(default_factory=list)
    regulation: List[str] = field(default_factory=list)
    penalty: float = DEFAULT_MARKER_PENALTY

    def for_category(self, category: str) -> List[str]:
        if category == "news":
            return self.news
        if category == "regulation":
            return self.regulation
        return []

    @property
    def enabled(self) -> bool:
        return bool(self.news or self.regulation)


@dataclass
class PollerSettings:
    """Resolved poller settings."""
    poller_id: str = DEFAULT_POLLER_ID
    user_agent: str = DEFAULT_USER_AGENT
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_workers: int = DEFAULT_MAX_WORKERS
    deadline_seconds: Optional[float] = DEFAULT_DEADLINE_SECONDS
    registry_path: str = DEFAULT_REGISTRY_PATH
    export_path: str = DEFAULT_EXPORT_PATH
    runs_dir: str = DEFAULT_RUNS_DIR
    markers: ContentMarkers = field(default_factory=ContentMarkers)


def load_poller_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load poller configuration from config/poller.yaml.

    Args:
        config_path: Explicit path; when None the CWD and repo root are searched

    Returns:
        Config dict or empty dict if file not found
    """
    if config_path is not None:
        config_paths = [config_path]
    else:
        config_paths = [
            "config/poller.yaml",
            str(REPO_ROOT / "config" / "poller.yaml"),
        ]

    for path in config_paths:
        if os.path.exists(path):
            try:
                with open(path, 'r') as f:
                    return yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load poller config from {path}: {e}")

    return {}


def get_poller_settings(config_path: Optional[str] = None) -> PollerSettings:
    """
    Build PollerSettings from config file, environment and defaults.

    Environment overrides: REGWATCH_REGISTRY, REGWATCH_RUNS_DIR.
    """
    config = load_poller_config(config_path)
    paths = config.get('paths', {}) or {}
    markers_config = config.get('content_markers', {}) or {}

    deadline = config.get('deadline_seconds', DEFAULT_DEADLINE_SECONDS)

    return PollerSettings(
        poller_id=config.get('poller_id', DEFAULT_POLLER_ID),
        user_agent=config.get('user_agent', DEFAULT_USER_AGENT),
        timeout_seconds=float(config.get('timeout_seconds', DEFAULT_TIMEOUT_SECONDS)),
        max_workers=int(config.get('max_workers', DEFAULT_MAX_WORKERS)),
        deadline_seconds=float(deadline) if deadline is not None else None,
        registry_path=os.environ.get(
            "REGWATCH_REGISTRY", paths.get('registry', DEFAULT_REGISTRY_PATH)
        ),
        export_path=paths.get('export', DEFAULT_EXPORT_PATH),
        runs_dir=os.environ.get(
            "REGWATCH_RUNS_DIR", paths.get('runs_dir', DEFAULT_RUNS_DIR)
        ),
        markers=ContentMarkers(
            news=[k.lower() for k in markers_config.get('news', []) or []],
            regulation=[k.lower() for k in markers_config.get('regulation', []) or []],
            penalty=float(markers_config.get('penalty', DEFAULT_MARKER_PENALTY)),
        ),
    )
