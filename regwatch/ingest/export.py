"""Flat CSV export of the source registry, one row per source."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Union

import pandas as pd

from ..config.settings import DEFAULT_POLLER_ID
from .registry import Registry

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = ["poller", "state", "agency", "agencyName", "sourceType", "url", "category"]


def flatten(registry: Registry, poller_id: str = DEFAULT_POLLER_ID) -> List[Dict[str, Any]]:
    """Rows in registry order; within a jurisdiction, rss feeds then news then regulation."""
    rows = []
    for code, jurisdiction in registry.items():
        for source in jurisdiction.sources:
            rows.append({
                "poller": poller_id,
                "state": code,
                "agency": jurisdiction.agency or "",
                "agencyName": jurisdiction.agency_name or "",
                "sourceType": source.source_type,
                "url": source.url,
                "category": source.category,
            })
    return rows


def to_dataframe(registry: Registry, poller_id: str = DEFAULT_POLLER_ID) -> pd.DataFrame:
    return pd.DataFrame(flatten(registry, poller_id), columns=EXPORT_COLUMNS)


def write_export(
    registry: Registry,
    output_path: Union[str, Path],
    poller_id: str = DEFAULT_POLLER_ID,
) -> int:
    """
    Regenerate the CSV export from the registry.

    Returns:
        Number of rows written
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    df = to_dataframe(registry, poller_id)
    temp_path = output_path.with_suffix(output_path.suffix + '.tmp')
    try:
        df.to_csv(temp_path, index=False)
        os.replace(temp_path, output_path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise

    logger.info(f"Exported {len(df)} sources to {output_path}")
    return len(df)


def read_export(path: Union[str, Path]) -> pd.DataFrame:
    return pd.read_csv(path, dtype=str, keep_default_na=False)
