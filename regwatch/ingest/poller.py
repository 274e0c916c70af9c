"""
Concurrent source poller.

Probes every registered URL once per cycle with aiohttp:
- bounded concurrency (shared semaphore + connector limit)
- fixed per-request timeout, no retries within a cycle
- optional global deadline; unfinished fetches are recorded as timeouts
- results reassembled into each jurisdiction's source order

Per-source failures never escape this module; they become FetchResults.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp

from ..config.settings import (
    DEFAULT_MAX_WORKERS,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_USER_AGENT,
    PollerSettings,
)
from .registry import Jurisdiction, Registry, Source

logger = logging.getLogger(__name__)

# Bodies are only kept for content signals; cap what we hold in memory
MAX_BODY_CHARS = 200_000

TIMEOUT_ERROR = "timeout"

TEXT_CONTENT_TYPES = ("text/html", "application/xhtml+xml", "text/xml", "application/xml", "text/plain")

DEFAULT_HEADERS = {
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.5',
}


class FetchFailure(Exception):
    """Raised inside the poller when a single source cannot be fetched."""
    def __init__(self, url: str, message: str, original_error: Optional[Exception] = None):
        self.url = url
        self.message = message
        self.original_error = original_error
        super().__init__(f"{url}: {message}")


@dataclass
class FetchResult:
    """Outcome of probing one source in one poll cycle."""
    source: Source
    http_status: Optional[int]
    reachable: bool
    latency_ms: Optional[int]
    error_message: Optional[str]
    observed_at: datetime
    content_type: Optional[str] = None
    body: Optional[str] = field(default=None, repr=False)


@dataclass
class PollOptions:
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_workers: int = DEFAULT_MAX_WORKERS
    user_agent: str = DEFAULT_USER_AGENT
    deadline_seconds: Optional[float] = None
    follow_redirects: bool = False
    max_body_chars: int = MAX_BODY_CHARS

    @classmethod
    def from_settings(cls, settings: PollerSettings) -> "PollOptions":
        return cls(
            timeout_seconds=settings.timeout_seconds,
            max_workers=settings.max_workers,
            user_agent=settings.user_agent,
            deadline_seconds=settings.deadline_seconds,
        )


Fetcher = Callable[[Source], Awaitable[FetchResult]]


def is_reachable_status(status: int) -> bool:
    """2xx and 3xx count as reachable; everything else does not."""
    return 200 <= status <= 399


def failed_result(source: Source, error_message: str, http_status: Optional[int] = None,
                  latency_ms: Optional[int] = None) -> FetchResult:
    return FetchResult(
        source=source,
        http_status=http_status,
        reachable=False,
        latency_ms=latency_ms,
        error_message=error_message,
        observed_at=datetime.now(timezone.utc),
    )


async def _fetch_impl(session: aiohttp.ClientSession, source: Source, options: PollOptions) -> FetchResult:
    """Single GET with no failure handling; transport problems raise FetchFailure."""
    observed_at = datetime.now(timezone.utc)
    start = time.monotonic()

    try:
        async with session.get(
            source.url,
            headers={**DEFAULT_HEADERS, 'User-Agent': options.user_agent},
            timeout=aiohttp.ClientTimeout(total=options.timeout_seconds),
            allow_redirects=options.follow_redirects,
        ) as response:
            status = response.status
            content_type = response.content_type
            body = None
            if 200 <= status <= 299 and content_type in TEXT_CONTENT_TYPES:
                text = await response.text(errors="replace")
                body = text[:options.max_body_chars]
    except asyncio.TimeoutError as e:
        raise FetchFailure(source.url, TIMEOUT_ERROR, e) from e
    except (aiohttp.ClientError, OSError, ValueError) as e:
        message = str(e) or type(e).__name__
        raise FetchFailure(source.url, message, e) from e

    latency_ms = int((time.monotonic() - start) * 1000)
    reachable = is_reachable_status(status)

    return FetchResult(
        source=source,
        http_status=status,
        reachable=reachable,
        latency_ms=latency_ms,
        error_message=None if reachable else f"HTTP {status}",
        observed_at=observed_at,
        content_type=content_type,
        body=body,
    )


async def fetch_source(session: aiohttp.ClientSession, source: Source, options: PollOptions) -> FetchResult:
    """
    Probe one source. Never raises for network or HTTP problems.

    Returns:
        FetchResult; on failure reachable=False with error_message set
        ("timeout" for timeouts) and http_status=None
    """
    try:
        return await _fetch_impl(session, source, options)
    except FetchFailure as e:
        logger.debug(f"Fetch failed for {source.url}: {e.message}")
        return failed_result(source, e.message)


def open_session(options: PollOptions) -> aiohttp.ClientSession:
    connector = aiohttp.TCPConnector(limit=options.max_workers)
    return aiohttp.ClientSession(connector=connector)


def _collect(task: "asyncio.Task[FetchResult]", source: Source) -> FetchResult:
    if task.cancelled():
        return failed_result(source, TIMEOUT_ERROR)

    error = task.exception()
    if error is not None:
        # A fetcher should never raise; absorb anyway so the report stays complete
        logger.warning(f"Unexpected error polling {source.url}: {error!r}")
        return failed_result(source, str(error) or type(error).__name__)

    return task.result()


async def _poll(registry: Registry, options: PollOptions, fetcher: Fetcher) -> Dict[str, List[FetchResult]]:
    semaphore = asyncio.Semaphore(options.max_workers)

    async def bounded(source: Source) -> FetchResult:
        async with semaphore:
            return await fetcher(source)

    tasks: Dict[Tuple[str, int], "asyncio.Task[FetchResult]"] = {}
    for code, jurisdiction in registry.items():
        for index, source in enumerate(jurisdiction.sources):
            tasks[(code, index)] = asyncio.ensure_future(bounded(source))

    if tasks:
        _, pending = await asyncio.wait(list(tasks.values()), timeout=options.deadline_seconds)
        if pending:
            logger.warning(f"Poll deadline reached; {len(pending)} fetches recorded as timeouts")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    results: Dict[str, List[FetchResult]] = {}
    for code, jurisdiction in registry.items():
        results[code] = [
            _collect(tasks[(code, index)], source)
            for index, source in enumerate(jurisdiction.sources)
        ]
    return results


async def poll_registry(
    registry: Registry,
    options: PollOptions,
    fetcher: Optional[Fetcher] = None,
) -> Dict[str, List[FetchResult]]:
    """
    Poll every source of every jurisdiction concurrently.

    Args:
        registry: Jurisdictions to poll (not modified)
        options: Timeout, concurrency and deadline settings
        fetcher: Optional replacement for the aiohttp fetch (one Source in,
                 one FetchResult out); a session is only opened when None

    Returns:
        Mapping of code -> FetchResults in that jurisdiction's source order
    """
    if fetcher is not None:
        return await _poll(registry, options, fetcher)

    async with open_session(options) as session:
        async def http_fetch(source: Source) -> FetchResult:
            return await fetch_source(session, source, options)

        return await _poll(registry, options, http_fetch)


async def poll_jurisdiction(
    jurisdiction: Jurisdiction,
    options: PollOptions,
    fetcher: Optional[Fetcher] = None,
) -> List[FetchResult]:
    """Poll one jurisdiction; one FetchResult per source, in source order."""
    results = await poll_registry({jurisdiction.code: jurisdiction}, options, fetcher)
    return results[jurisdiction.code]


def run_poll(
    registry: Registry,
    options: PollOptions,
    fetcher: Optional[Fetcher] = None,
) -> Dict[str, List[FetchResult]]:
    """Blocking wrapper around poll_registry for synchronous callers."""
    total = sum(len(j.sources) for j in registry.values())
    logger.info(f"Polling {total} sources across {len(registry)} jurisdictions "
                f"(workers={options.max_workers}, timeout={options.timeout_seconds}s)")
    return asyncio.run(poll_registry(registry, options, fetcher))
