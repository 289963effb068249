#!/usr/bin/env python3
"""
Feed autodiscovery.

Given any URL, first try it as a feed. If it is an HTML page instead, look
for ``<link rel="alternate">`` elements pointing at feeds. A single candidate
is fetched and parsed; several candidates are handed back to the caller to
choose from, without fetching any of them.
"""

from asyncio import get_running_loop
from dataclasses import dataclass, field
from functools import partial
from typing import List, Optional

from bs4 import BeautifulSoup

from config import get_logger
from errors import DiscoveryError, StructuralParseError
from fetcher import FeedFetcher, FetchResult
from parsing import ParseResult, parse_feed
from telemetry import trace_span
from utils import absolute_url

logger = get_logger("discovery")

FEED_LINK_TYPES = (
    'application/rss+xml',
    'application/atom+xml',
    'application/rdf+xml',
    'application/feed+json',
    'application/json',
)


@dataclass
class FeedCandidate:
    url: str
    title: str = ""
    type: str = ""


@dataclass
class DiscoveryResult:
    """Either a resolved feed (``feed_url`` + ``feed``) or a list of candidates."""

    feed_url: Optional[str] = None
    feed: Optional[ParseResult] = None
    candidates: List[FeedCandidate] = field(default_factory=list)

    @property
    def ambiguous(self) -> bool:
        return self.feed is None and len(self.candidates) > 1


def find_feed_links(html: str, base_url: str) -> List[FeedCandidate]:
    """Collect autodiscovery links from an HTML page, in document order."""
    soup = BeautifulSoup(html, 'html.parser')
    candidates: List[FeedCandidate] = []
    seen = set()
    for link in soup.find_all('link', href=True):
        rel = link.get('rel') or []
        if isinstance(rel, str):
            rel = rel.split()
        if 'alternate' not in [r.lower() for r in rel]:
            continue
        type_attr = (link.get('type') or '').split(';')[0].strip().lower()
        if type_attr not in FEED_LINK_TYPES:
            continue
        href = absolute_url(link.get('href'), base_url)
        if not href or href in seen:
            continue
        seen.add(href)
        candidates.append(FeedCandidate(url=href, title=(link.get('title') or '').strip(), type=type_attr))
    return candidates


async def _parse_in_executor(result: FetchResult) -> ParseResult:
    loop = get_running_loop()
    return await loop.run_in_executor(
        None, partial(parse_feed, result.body, result.url, result.content_type or None)
    )


@trace_span("discover_feed", tracer_name="discovery", attr_from_args=lambda fetcher, url: {"http.url": url})
async def discover_feed(fetcher: FeedFetcher, url: str) -> DiscoveryResult:
    """Resolve ``url`` to a feed.

    Raises:
        FetchError: if ``url`` (or its only candidate) cannot be fetched.
        DiscoveryError: if no feed is found.
    """
    page = await fetcher.fetch(url)
    try:
        feed = await _parse_in_executor(page)
        logger.info(f"{url} is a feed ({feed.feed.version or 'unknown format'})")
        return DiscoveryResult(feed_url=page.url, feed=feed)
    except StructuralParseError:
        logger.debug(f"{url} is not a feed, looking for autodiscovery links")

    candidates = find_feed_links(page.text(), page.url)
    if not candidates:
        raise DiscoveryError(f"no feeds found at {url}")

    if len(candidates) > 1:
        logger.info(f"Found {len(candidates)} feeds at {url}")
        return DiscoveryResult(candidates=candidates)

    candidate = candidates[0]
    logger.info(f"Discovered feed: {candidate.url}")
    linked = await fetcher.fetch(candidate.url)
    try:
        feed = await _parse_in_executor(linked)
    except StructuralParseError as e:
        raise DiscoveryError(f"feed linked from {url} could not be parsed: {e}") from e
    return DiscoveryResult(feed_url=linked.url, feed=feed)
