"""
Run directory helpers.

Each poll run writes runs/RUN_YYYYMMDD_HHMMSS/ with:
- poll_report.json
- alerts.json
runs/_meta/ holds state shared across runs (source health, curation snapshots).
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

REPORT_ARTIFACT = "poll_report.json"
ALERTS_ARTIFACT = "alerts.json"

RUN_ARTIFACTS = [
    REPORT_ARTIFACT,
    ALERTS_ARTIFACT,
]


def make_run_id(now: Optional[datetime] = None) -> str:
    """Run id in RUN_YYYYMMDD_HHMMSS format (sorts chronologically)."""
    if now is None:
        now = datetime.now(timezone.utc)
    return f"RUN_{now.strftime('%Y%m%d_%H%M%S')}"


def list_runs_sorted(runs_dir: Path = Path("runs")) -> List[str]:
    """
    Return run folder names sorted by date descending.

    Excludes:
    - _meta folder
    - TEST_* folders
    - Non-directory entries

    Args:
        runs_dir: Path to runs directory

    Returns:
        List of run folder names sorted by date descending
    """
    runs_dir = Path(runs_dir)
    if not runs_dir.exists() or not runs_dir.is_dir():
        return []

    runs = []
    for entry in runs_dir.iterdir():
        if not entry.is_dir():
            continue

        name = entry.name
        if name == "_meta" or name.startswith("TEST_"):
            continue

        runs.append(name)

    runs.sort(reverse=True)
    return runs


def check_artifacts_exist(run_dir: Path, artifacts: List[str] = RUN_ARTIFACTS) -> Tuple[bool, List[str]]:
    """
    Check which artifacts exist in a run directory.

    Returns:
        Tuple of (all_exist, missing_artifacts)
    """
    missing = [a for a in artifacts if not (Path(run_dir) / a).exists()]
    return len(missing) == 0, missing


def find_latest_report(runs_dir: Path = Path("runs")) -> Optional[Path]:
    """Path to the newest run's poll_report.json, or None if no run has one."""
    runs_dir = Path(runs_dir)
    for run_name in list_runs_sorted(runs_dir):
        path = runs_dir / run_name / REPORT_ARTIFACT
        if path.exists():
            return path
    return None


def get_run_info(run_dir: Path) -> dict:
    """
    Summary info about a run from its artifacts.

    Returns:
        Dict with run_id, generated_at, total_sources, problematic_count,
        alert_status, missing (artifact names)
    """
    run_dir = Path(run_dir)
    _, missing = check_artifacts_exist(run_dir)
    info = {
        "run_id": run_dir.name,
        "generated_at": None,
        "total_sources": None,
        "problematic_count": None,
        "alert_status": None,
        "missing": missing,
    }

    report_path = run_dir / REPORT_ARTIFACT
    if report_path.exists():
        try:
            with open(report_path, 'r') as f:
                report = json.load(f)
            info["generated_at"] = report.get("timestamp")
            info["total_sources"] = report.get("totalSources")
            info["problematic_count"] = len(report.get("problematicStates", []))
        except json.JSONDecodeError:
            pass

    alerts_path = run_dir / ALERTS_ARTIFACT
    if alerts_path.exists():
        try:
            with open(alerts_path, 'r') as f:
                info["alert_status"] = json.load(f).get("status")
        except json.JSONDecodeError:
            pass

    return info
