"""
Source registry: per-jurisdiction news and regulation URLs.

The registry is stored as YAML keyed by two-letter jurisdiction code:

    AR:
      agency: AR-MMC
      agencyName: Arkansas Medical Marijuana Commission
      rssFeeds: []
      newsPages:
        - https://...
      regulationPages:
        - https://...

It is read whole, validated, and written whole. The poller and scorer only
read it under a shared registry_write_lock(); the curator is the only writer
and must hold the lock exclusively.
"""

import fcntl
import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Tuple, Union

import jsonschema
import yaml

from .jurisdictions import is_valid_code

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "schemas" / "source_registry.schema.json"

CATEGORY_NEWS = "news"
CATEGORY_REGULATION = "regulation"
CATEGORIES = (CATEGORY_NEWS, CATEGORY_REGULATION)

SOURCE_TYPE_WEBPAGE = "webpage"
SOURCE_TYPE_RSS = "rss"

PathLike = Union[str, Path]


class ConfigCorrupt(Exception):
    """Raised when the registry file cannot be parsed or fails validation."""
    pass


class CuratorWriteConflict(Exception):
    """Raised when another writer already holds the registry lock."""
    pass


@dataclass(frozen=True)
class Source:
    """A candidate URL to monitor. Never mutated; replace means remove + add."""
    url: str
    category: str
    jurisdiction: str
    source_type: str = SOURCE_TYPE_WEBPAGE


@dataclass(frozen=True)
class Jurisdiction:
    """A state (or DC / federal) and its ordered source lists."""
    code: str
    news_sources: Tuple[Source, ...] = ()
    regulation_sources: Tuple[Source, ...] = ()
    rss_feeds: Tuple[Source, ...] = ()
    agency: Optional[str] = None
    agency_name: Optional[str] = None

    @classmethod
    def from_urls(
        cls,
        code: str,
        news: List[str] = (),
        regulation: List[str] = (),
        rss: List[str] = (),
        agency: Optional[str] = None,
        agency_name: Optional[str] = None,
    ) -> "Jurisdiction":
        return cls(
            code=code,
            news_sources=tuple(Source(u, CATEGORY_NEWS, code) for u in news),
            regulation_sources=tuple(Source(u, CATEGORY_REGULATION, code) for u in regulation),
            rss_feeds=tuple(Source(u, CATEGORY_NEWS, code, SOURCE_TYPE_RSS) for u in rss),
            agency=agency,
            agency_name=agency_name,
        )

    @property
    def sources(self) -> Tuple[Source, ...]:
        """All sources in polling order: rss feeds, news pages, regulation pages."""
        return self.rss_feeds + self.news_sources + self.regulation_sources

    @property
    def is_empty(self) -> bool:
        return not self.sources

    def cleared(self) -> "Jurisdiction":
        """Copy of this jurisdiction with every source list emptied."""
        return replace(self, news_sources=(), regulation_sources=(), rss_feeds=())


class SourceCounts(NamedTuple):
    news: int
    regulation: int
    rss: int = 0

    @property
    def total(self) -> int:
        return self.news + self.regulation + self.rss


Registry = Dict[str, Jurisdiction]


def count_sources(jurisdiction: Jurisdiction) -> SourceCounts:
    return SourceCounts(
        news=len(jurisdiction.news_sources),
        regulation=len(jurisdiction.regulation_sources),
        rss=len(jurisdiction.rss_feeds),
    )


def _load_schema() -> Dict[str, Any]:
    with open(SCHEMA_PATH) as f:
        return json.load(f)


def validate_registry_data(data: Any) -> None:
    """
    Validate raw registry data (as parsed from YAML).

    Checks the JSON schema, the jurisdiction enumeration, and that no URL is
    listed twice anywhere in the registry.

    Raises:
        ConfigCorrupt: On the first problem found
    """
    if not isinstance(data, dict):
        raise ConfigCorrupt("Registry root must be a mapping of jurisdiction codes")

    try:
        jsonschema.validate(data, _load_schema())
    except jsonschema.ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigCorrupt(f"Registry schema validation failed at {location}: {e.message}") from e

    seen: Dict[str, str] = {}
    for code, entry in data.items():
        if not is_valid_code(code):
            raise ConfigCorrupt(f"Unknown jurisdiction code: {code}")

        for key in ("rssFeeds", "newsPages", "regulationPages"):
            for url in entry.get(key, []):
                owner = f"{code}.{key}"
                if url in seen:
                    raise ConfigCorrupt(f"URL {url} listed in both {seen[url]} and {owner}")
                seen[url] = owner


def registry_from_data(data: Dict[str, Any]) -> Registry:
    """Build a Registry from validated raw data, preserving file order."""
    validate_registry_data(data)

    registry: Registry = {}
    for code, entry in data.items():
        registry[code] = Jurisdiction.from_urls(
            code,
            news=entry.get("newsPages", []),
            regulation=entry.get("regulationPages", []),
            rss=entry.get("rssFeeds", []),
            agency=entry.get("agency"),
            agency_name=entry.get("agencyName"),
        )
    return registry


def registry_to_data(registry: Registry) -> Dict[str, Dict[str, Any]]:
    """Serialize a Registry to the on-disk mapping shape."""
    data: Dict[str, Dict[str, Any]] = {}
    for code, jurisdiction in registry.items():
        entry: Dict[str, Any] = {}
        if jurisdiction.agency is not None:
            entry["agency"] = jurisdiction.agency
        if jurisdiction.agency_name is not None:
            entry["agencyName"] = jurisdiction.agency_name
        if jurisdiction.rss_feeds:
            entry["rssFeeds"] = [s.url for s in jurisdiction.rss_feeds]
        entry["newsPages"] = [s.url for s in jurisdiction.news_sources]
        entry["regulationPages"] = [s.url for s in jurisdiction.regulation_sources]
        data[code] = entry
    return data


def load(path: PathLike) -> Registry:
    """
    Load and validate the registry file.

    Args:
        path: Path to the registry YAML

    Returns:
        Mapping of jurisdiction code -> Jurisdiction, in file order

    Raises:
        ConfigCorrupt: If the file is missing, unparseable, or invalid
    """
    path = Path(path)
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigCorrupt(f"Registry file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigCorrupt(f"Registry file {path} is not valid YAML: {e}") from e

    if data is None:
        data = {}

    registry = registry_from_data(data)
    logger.debug(f"Loaded {len(registry)} jurisdictions from {path}")
    return registry


def save(registry: Registry, path: PathLike) -> None:
    """
    Persist the full registry atomically.

    The file is written to a temp sibling and renamed over the original, so
    readers see either the old or the new registry, never a partial one.
    """
    path = Path(path)
    data = registry_to_data(registry)
    validate_registry_data(data)

    content = yaml.safe_dump(data, sort_keys=False, default_flow_style=False, allow_unicode=True)

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + '.tmp')
    try:
        with open(temp_path, 'w') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise

    logger.info(f"Saved registry ({len(registry)} jurisdictions) to {path}")


@contextmanager
def registry_write_lock(path: PathLike, shared: bool = False) -> Iterator[None]:
    """
    Hold the registry lock for the duration of the block.

    Uses a non-blocking flock on a sidecar ``.lock`` file. Curators take it
    exclusively; a poll run takes it shared (``shared=True``) so the registry
    cannot be rewritten under an in-flight poll. Polls may overlap each other.

    Raises:
        CuratorWriteConflict: If the lock is held in a conflicting mode
    """
    lock_path = Path(str(path) + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    mode = fcntl.LOCK_SH if shared else fcntl.LOCK_EX

    with open(lock_path, 'a') as f:
        try:
            fcntl.flock(f.fileno(), mode | fcntl.LOCK_NB)
        except BlockingIOError as e:
            holder = "a curation" if shared else "another writer or an in-flight poll"
            raise CuratorWriteConflict(
                f"Registry {path} is locked by {holder} ({lock_path})"
            ) from e
        try:
            yield
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
