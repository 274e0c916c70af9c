"""
Registry curation.

Three pure edits, each returning (new_registry, CurationDiff):
- curate(): drop every source of flagged jurisdictions
- prune_sources(): drop individual URLs (e.g. failed or DOWN sources)
- add_sources(): add replacement sources to a jurisdiction

The diff keeps the removed and added sources so an edit can be inspected
and reverted.

The apply_* wrappers are side-effecting: they take the registry write lock,
snapshot the pre-edit registry, save the edited registry and regenerate the
CSV export so it never drifts from the registry.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from ..config.settings import DEFAULT_POLLER_ID
from . import registry as registry_store
from .export import write_export
from .registry import (
    CATEGORY_NEWS,
    CATEGORY_REGULATION,
    SOURCE_TYPE_RSS,
    Jurisdiction,
    Registry,
    Source,
    registry_write_lock,
)

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_DIR = "runs/_meta/registry_snapshots"

PathLike = Union[str, Path]


@dataclass
class CurationDiff:
    """Sources removed and added by one registry edit, keyed by jurisdiction code."""
    removed: Dict[str, Jurisdiction] = field(default_factory=dict)
    added: Dict[str, Jurisdiction] = field(default_factory=dict)
    unknown_codes: List[str] = field(default_factory=list)
    already_empty: List[str] = field(default_factory=list)
    unknown_urls: List[str] = field(default_factory=list)
    skipped_urls: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def is_empty(self) -> bool:
        return not self.removed and not self.added

    @property
    def removed_count(self) -> int:
        return sum(len(j.sources) for j in self.removed.values())

    @property
    def added_count(self) -> int:
        return sum(len(j.sources) for j in self.added.values())

    def revert(self, registry: Registry) -> Registry:
        """
        Return a copy of ``registry`` with this edit undone.

        Added sources are dropped and removed sources are put back ahead of
        whatever the jurisdiction holds now. Codes no longer in the registry
        are ignored.
        """
        restored = dict(registry)

        for code, added in self.added.items():
            current = restored.get(code)
            if current is None:
                continue
            urls = {s.url for s in added.sources}
            restored[code] = replace(
                current,
                rss_feeds=tuple(s for s in current.rss_feeds if s.url not in urls),
                news_sources=tuple(s for s in current.news_sources if s.url not in urls),
                regulation_sources=tuple(s for s in current.regulation_sources if s.url not in urls),
            )

        for code, before in self.removed.items():
            current = restored.get(code)
            if current is None:
                continue
            restored[code] = replace(
                current,
                rss_feeds=_merge(before.rss_feeds, current.rss_feeds),
                news_sources=_merge(before.news_sources, current.news_sources),
                regulation_sources=_merge(before.regulation_sources, current.regulation_sources),
            )
        return restored

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created_at": self.created_at,
            "removed_count": self.removed_count,
            "added_count": self.added_count,
            "removed": registry_store.registry_to_data(self.removed),
            "added": registry_store.registry_to_data(self.added),
            "unknown_codes": list(self.unknown_codes),
            "already_empty": list(self.already_empty),
            "unknown_urls": list(self.unknown_urls),
            "skipped_urls": list(self.skipped_urls),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CurationDiff":
        return cls(
            removed=registry_store.registry_from_data(data.get("removed", {})),
            added=registry_store.registry_from_data(data.get("added", {})),
            unknown_codes=data.get("unknown_codes", []),
            already_empty=data.get("already_empty", []),
            unknown_urls=data.get("unknown_urls", []),
            skipped_urls=data.get("skipped_urls", []),
            created_at=data.get("created_at", ""),
        )


def _merge(before: Tuple[Source, ...], current: Tuple[Source, ...]) -> Tuple[Source, ...]:
    urls = {s.url for s in before}
    return tuple(before) + tuple(s for s in current if s.url not in urls)


def curate(registry: Registry, codes: Iterable[str]) -> Tuple[Registry, CurationDiff]:
    """
    Empty the source lists of each listed jurisdiction.

    Args:
        registry: Current registry (not modified)
        codes: Problematic or manually chosen jurisdiction codes

    Returns:
        (new_registry, diff). Unknown codes are recorded in the diff and
        otherwise ignored; curating an already-empty jurisdiction is a no-op.
    """
    new_registry = dict(registry)
    diff = CurationDiff()

    for code in dict.fromkeys(codes):
        jurisdiction = registry.get(code)
        if jurisdiction is None:
            diff.unknown_codes.append(code)
            continue
        if jurisdiction.is_empty:
            diff.already_empty.append(code)
            continue
        diff.removed[code] = jurisdiction
        new_registry[code] = jurisdiction.cleared()

    return new_registry, diff


def prune_sources(registry: Registry, urls: Iterable[str]) -> Tuple[Registry, CurationDiff]:
    """
    Remove individual sources by URL, wherever they are registered.

    Returns:
        (new_registry, diff). URLs not in the registry are recorded in
        diff.unknown_urls; the rest of each jurisdiction is kept in order.
    """
    targets = set(urls)
    new_registry = dict(registry)
    diff = CurationDiff()
    found = set()

    for code, jurisdiction in registry.items():
        hits = [s for s in jurisdiction.sources if s.url in targets]
        if not hits:
            continue
        found.update(s.url for s in hits)
        diff.removed[code] = replace(
            jurisdiction.cleared(),
            rss_feeds=tuple(s for s in jurisdiction.rss_feeds if s.url in targets),
            news_sources=tuple(s for s in jurisdiction.news_sources if s.url in targets),
            regulation_sources=tuple(s for s in jurisdiction.regulation_sources if s.url in targets),
        )
        new_registry[code] = replace(
            jurisdiction,
            rss_feeds=tuple(s for s in jurisdiction.rss_feeds if s.url not in targets),
            news_sources=tuple(s for s in jurisdiction.news_sources if s.url not in targets),
            regulation_sources=tuple(s for s in jurisdiction.regulation_sources if s.url not in targets),
        )

    diff.unknown_urls = sorted(targets - found)
    return new_registry, diff


def add_sources(
    registry: Registry,
    code: str,
    news: Iterable[str] = (),
    regulation: Iterable[str] = (),
    rss: Iterable[str] = (),
) -> Tuple[Registry, CurationDiff]:
    """
    Append replacement sources to one jurisdiction.

    A code not yet in the registry gets a new, otherwise empty entry. URLs
    already registered anywhere (or repeated in the request) are skipped
    and recorded in diff.skipped_urls, so adding is idempotent.
    """
    new_registry = dict(registry)
    diff = CurationDiff()

    seen = {s.url for j in registry.values() for s in j.sources}
    requested = {CATEGORY_NEWS: [], CATEGORY_REGULATION: [], SOURCE_TYPE_RSS: []}
    for key, urls in ((SOURCE_TYPE_RSS, rss), (CATEGORY_NEWS, news), (CATEGORY_REGULATION, regulation)):
        for url in urls:
            if url in seen:
                diff.skipped_urls.append(url)
                continue
            seen.add(url)
            requested[key].append(url)

    if not any(requested.values()):
        return new_registry, diff

    current = registry.get(code) or Jurisdiction(code=code)
    added = Jurisdiction.from_urls(
        code,
        news=requested[CATEGORY_NEWS],
        regulation=requested[CATEGORY_REGULATION],
        rss=requested[SOURCE_TYPE_RSS],
    )
    diff.added[code] = replace(added, agency=current.agency, agency_name=current.agency_name)
    new_registry[code] = replace(
        current,
        rss_feeds=current.rss_feeds + added.rss_feeds,
        news_sources=current.news_sources + added.news_sources,
        regulation_sources=current.regulation_sources + added.regulation_sources,
    )
    return new_registry, diff


@dataclass
class CurationOutcome:
    diff: CurationDiff
    registry: Registry
    snapshot_path: Optional[str] = None
    export_rows: Optional[int] = None
    dry_run: bool = False


def write_snapshot(before: Registry, diff: CurationDiff, request: Any, snapshot_dir: PathLike) -> str:
    """Write the pre-edit registry and the diff to a timestamped JSON file."""
    snapshot_dir = Path(snapshot_dir)
    snapshot_dir.mkdir(parents=True, exist_ok=True)

    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
    path = snapshot_dir / f"curation_{stamp}.json"
    with open(path, 'w') as f:
        json.dump({
            "request": request,
            "registry": registry_store.registry_to_data(before),
            "diff": diff.to_dict(),
        }, f, indent=2)
    return str(path)


def _apply(
    registry_path: PathLike,
    edit: Callable[[Registry], Tuple[Registry, CurationDiff]],
    request: Dict[str, Any],
    export_path: PathLike,
    snapshot_dir: PathLike,
    dry_run: bool,
    poller_id: str,
) -> CurationOutcome:
    with registry_write_lock(registry_path):
        before = registry_store.load(registry_path)
        after, diff = edit(before)
        registry_store.validate_registry_data(registry_store.registry_to_data(after))

        if dry_run:
            logger.info(f"Dry run: would remove {diff.removed_count} and add {diff.added_count} sources")
            return CurationOutcome(diff=diff, registry=after, dry_run=True)

        snapshot_path = None
        if not diff.is_empty:
            snapshot_path = write_snapshot(before, diff, request, snapshot_dir)
            registry_store.save(after, registry_path)
            logger.info(f"Removed {diff.removed_count} and added {diff.added_count} sources "
                        f"({sorted(set(diff.removed) | set(diff.added))}); snapshot: {snapshot_path}")
        else:
            logger.info("Nothing to change; registry unchanged")

        export_rows = write_export(after, export_path, poller_id)

    return CurationOutcome(
        diff=diff,
        registry=after,
        snapshot_path=snapshot_path,
        export_rows=export_rows,
    )


def apply_curation(
    registry_path: PathLike,
    codes: Iterable[str],
    export_path: PathLike,
    snapshot_dir: PathLike = DEFAULT_SNAPSHOT_DIR,
    dry_run: bool = False,
    poller_id: str = DEFAULT_POLLER_ID,
) -> CurationOutcome:
    """
    Curate the registry file in place.

    Raises:
        CuratorWriteConflict: Another writer or a poll holds the lock; nothing is written
        ConfigCorrupt: The registry file cannot be loaded
    """
    codes = list(codes)
    return _apply(registry_path, lambda r: curate(r, codes), {"action": "curate", "codes": codes},
                  export_path, snapshot_dir, dry_run, poller_id)


def apply_prune(
    registry_path: PathLike,
    urls: Iterable[str],
    export_path: PathLike,
    snapshot_dir: PathLike = DEFAULT_SNAPSHOT_DIR,
    dry_run: bool = False,
    poller_id: str = DEFAULT_POLLER_ID,
) -> CurationOutcome:
    """Remove individual URLs from the registry file; same locking and export as apply_curation."""
    urls = list(urls)
    return _apply(registry_path, lambda r: prune_sources(r, urls), {"action": "prune", "urls": urls},
                  export_path, snapshot_dir, dry_run, poller_id)


def apply_additions(
    registry_path: PathLike,
    code: str,
    export_path: PathLike,
    news: Iterable[str] = (),
    regulation: Iterable[str] = (),
    rss: Iterable[str] = (),
    snapshot_dir: PathLike = DEFAULT_SNAPSHOT_DIR,
    dry_run: bool = False,
    poller_id: str = DEFAULT_POLLER_ID,
) -> CurationOutcome:
    """
    Add sources to one jurisdiction of the registry file.

    Raises:
        CuratorWriteConflict: Another writer or a poll holds the lock
        ConfigCorrupt: The registry cannot be loaded, or an added URL is invalid
    """
    news, regulation, rss = list(news), list(regulation), list(rss)
    request = {"action": "add", "code": code, "news": news, "regulation": regulation, "rss": rss}
    return _apply(registry_path, lambda r: add_sources(r, code, news, regulation, rss), request,
                  export_path, snapshot_dir, dry_run, poller_id)


def failed_urls_from_artifact(artifact: Dict[str, Any], poller_id: Optional[str] = None) -> List[str]:
    """URLs listed under failedSources of a report artifact, optionally for one poller id."""
    return [
        entry["url"] for entry in artifact.get("failedSources", [])
        if poller_id is None or entry.get("poller") == poller_id
    ]


def restore_snapshot(
    snapshot_path: PathLike,
    registry_path: PathLike,
    export_path: PathLike,
    poller_id: str = DEFAULT_POLLER_ID,
) -> Registry:
    """
    Revert a registry edit using the diff stored in its snapshot file.

    Raises:
        CuratorWriteConflict: Another writer or a poll holds the lock
        ConfigCorrupt: The registry or the snapshot's diff is invalid
    """
    with open(snapshot_path, 'r') as f:
        snapshot = json.load(f)
    diff = CurationDiff.from_dict(snapshot.get("diff", {}))

    with registry_write_lock(registry_path):
        current = registry_store.load(registry_path)
        restored = diff.revert(current)
        registry_store.save(restored, registry_path)
        write_export(restored, export_path, poller_id)

    logger.info(f"Restored {diff.removed_count} and dropped {diff.added_count} sources from {snapshot_path}")
    return restored
