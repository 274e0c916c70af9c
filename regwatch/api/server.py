"""
Read-only FastAPI server for the compliance dashboard.

Serves the poll report artifacts written under runs/:
- latest report and per-jurisdiction metrics
- run listing
- system status

Usage:
    uvicorn regwatch.api.server:app --reload --port 8000
"""

from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from ..config.settings import get_poller_settings
from ..ingest.jurisdictions import normalize_code
from ..ingest.report import ReportArtifactError, load_report_artifact
from ..run_utils import REPORT_ARTIFACT, find_latest_report, get_run_info, list_runs_sorted

app = FastAPI(
    title="Regwatch Source Poller API",
    description="Read-only access to regulation source poll reports",
    version="1.0.0",
)

# CORS for React frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)


class RunInfo(BaseModel):
    run_id: str
    generated_at: Optional[str] = None
    total_sources: Optional[int] = None
    problematic_count: Optional[int] = None
    alert_status: Optional[str] = None
    missing: List[str] = []


class SystemStatus(BaseModel):
    connected: bool
    runCount: int
    latestRunId: Optional[str] = None
    lastUpdate: Optional[str] = None
    problematicStates: List[str] = []


def _runs_dir() -> Path:
    return Path(get_poller_settings().runs_dir)


def _load(path: Path) -> dict:
    try:
        return load_report_artifact(path)
    except ReportArtifactError as e:
        raise HTTPException(status_code=500, detail=str(e))


def _latest_artifact() -> dict:
    path = find_latest_report(_runs_dir())
    if path is None:
        raise HTTPException(status_code=404, detail="No poll report available")
    return _load(path)


@app.get("/api/status", response_model=SystemStatus)
def get_status():
    runs_dir = _runs_dir()
    runs = list_runs_sorted(runs_dir)
    latest = find_latest_report(runs_dir)

    if latest is None:
        return SystemStatus(connected=True, runCount=len(runs))

    artifact = _load(latest)
    return SystemStatus(
        connected=True,
        runCount=len(runs),
        latestRunId=latest.parent.name,
        lastUpdate=artifact.get("timestamp"),
        problematicStates=artifact.get("problematicStates", []),
    )


@app.get("/api/runs", response_model=List[RunInfo])
def get_runs(limit: int = 20):
    runs_dir = _runs_dir()
    return [RunInfo(**get_run_info(runs_dir / name)) for name in list_runs_sorted(runs_dir)[:limit]]


@app.get("/api/report/latest")
def get_latest_report():
    return _latest_artifact()


@app.get("/api/report/latest/{code}")
def get_latest_jurisdiction(code: str):
    artifact = _latest_artifact()
    code = normalize_code(code)

    metrics = artifact.get("stateMetrics", {}).get(code)
    if metrics is None:
        raise HTTPException(status_code=404, detail=f"Jurisdiction not in report: {code}")

    entries = [
        e for e in artifact.get("topSources", []) + artifact.get("failedSources", [])
        if e.get("state") == code
    ]
    entries.sort(key=lambda e: e.get("position", 0))
    return {
        "state": code,
        "metrics": metrics,
        "problematic": code in artifact.get("problematicStates", []),
        "sources": entries,
    }


@app.get("/api/report/{run_id}")
def get_report(run_id: str):
    runs_dir = _runs_dir()
    if run_id not in list_runs_sorted(runs_dir):
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    path = runs_dir / run_id / REPORT_ARTIFACT
    if not path.exists():
        raise HTTPException(status_code=404, detail=f"Run {run_id} has no report")
    return _load(path)
