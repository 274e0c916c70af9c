"""
Source scoring and per-jurisdiction aggregation.

Base score from reachability:
    1.0  reachable, 2xx
    0.5  reachable, 3xx (redirect)
    0.0  anything else

Content markers (configured per category in config/poller.yaml) can only
lower the base score: a fetched body that contains none of its category's
markers is multiplied by the configured penalty.
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup, XMLParsedAsHTMLWarning

from ..config.settings import ContentMarkers
from .poller import FetchResult
from .registry import Source

logger = logging.getLogger(__name__)

SCORE_OK = 1.0
SCORE_REDIRECT = 0.5
SCORE_FAILED = 0.0


@dataclass
class ScoredSource:
    """A FetchResult with its score and accessibility verdict."""
    result: FetchResult
    score: float
    accessible: bool
    signals: Dict[str, Any] = field(default_factory=dict)

    @property
    def source(self) -> Source:
        return self.result.source


@dataclass
class JurisdictionMetrics:
    """Aggregate over one jurisdiction's scored sources for one poll cycle."""
    code: str
    total_sources: int
    accessible_sources: int
    average_score: float
    sources: List[ScoredSource] = field(default_factory=list)


def base_score(result: FetchResult) -> float:
    if not result.reachable or result.http_status is None:
        return SCORE_FAILED
    if 200 <= result.http_status <= 299:
        return SCORE_OK
    if 300 <= result.http_status <= 399:
        return SCORE_REDIRECT
    return SCORE_FAILED


def extract_content_signals(body: str) -> Dict[str, Any]:
    """Text length, link count and lower-cased visible text of an HTML body."""
    # RSS and XML bodies go through the HTML parser on purpose
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", XMLParsedAsHTMLWarning)
        soup = BeautifulSoup(body, 'lxml')
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()

    text = " ".join(soup.get_text(separator=" ").split())
    return {
        "text_length": len(text),
        "link_count": len(soup.find_all("a")),
        "text": text.lower(),
    }


def score(result: FetchResult, markers: Optional[ContentMarkers] = None) -> ScoredSource:
    """
    Score one fetch result.

    Args:
        result: Outcome of a single fetch
        markers: Optional keyword markers; ignored when the body is missing
                 or no markers are configured for the source's category

    Returns:
        ScoredSource with score in [0, 1] and accessible == result.reachable
    """
    value = base_score(result)
    signals: Dict[str, Any] = {}

    if result.body and value > 0:
        content = extract_content_signals(result.body)
        signals["text_length"] = content["text_length"]
        signals["link_count"] = content["link_count"]

        expected = markers.for_category(result.source.category) if markers else []
        if expected:
            found = [m for m in expected if m in content["text"]]
            signals["markers_found"] = found
            if not found:
                value *= markers.penalty
                logger.debug(f"No {result.source.category} markers on {result.source.url}; "
                             f"score lowered to {value:.2f}")

    value = min(1.0, max(0.0, value))
    return ScoredSource(result=result, score=value, accessible=result.reachable, signals=signals)


def score_all(results: List[FetchResult], markers: Optional[ContentMarkers] = None) -> List[ScoredSource]:
    return [score(r, markers) for r in results]


def aggregate(code: str, scored: List[ScoredSource]) -> JurisdictionMetrics:
    """
    Aggregate a jurisdiction's scored sources.

    A jurisdiction with no sources gets average_score 0.0 and
    accessible_sources 0 rather than an error.
    """
    total = len(scored)
    accessible = sum(1 for s in scored if s.accessible)
    average = sum(s.score for s in scored) / total if total else 0.0

    return JurisdictionMetrics(
        code=code,
        total_sources=total,
        accessible_sources=accessible,
        average_score=average,
        sources=list(scored),
    )
