#!/usr/bin/env python3
"""
Favicon lookup for a feed's site.

Tries ``/favicon.ico`` at the site root, then any icon declared in the home
page's ``<link rel="icon">`` family. Every failure is absorbed: the result is
simply ``None`` and the feed keeps no icon.
"""

from typing import List, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from config import config, get_logger
from errors import FetchError
from fetcher import FeedFetcher, FetchResult
from utils import absolute_url, sniff_image_type

logger = get_logger("favicon")

ICON_RELS = ('icon', 'shortcut icon', 'apple-touch-icon')


def site_root(url: str) -> Optional[str]:
    parsed = urlparse(url or '')
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}/"


def find_icon_links(html: str, base_url: str) -> List[str]:
    """Icon URLs declared in a page, in document order."""
    soup = BeautifulSoup(html, 'html.parser')
    links: List[str] = []
    for link in soup.find_all('link', href=True):
        rel = link.get('rel') or []
        if isinstance(rel, list):
            rel = ' '.join(rel)
        if rel.lower().strip() not in ICON_RELS:
            continue
        href = absolute_url(link.get('href'), base_url)
        if href and href not in links:
            links.append(href)
    return links


def _is_image(result: FetchResult) -> bool:
    if not result.body:
        return False
    return sniff_image_type(result.body) is not None or result.content_type.startswith('image/')


async def _try_icon(fetcher: FeedFetcher, url: str) -> Optional[bytes]:
    try:
        result = await fetcher.fetch(url, timeout=config.FAVICON_TIMEOUT)
    except FetchError as e:
        logger.debug(f"No icon at {url}: {e}")
        return None
    if _is_image(result):
        return result.body
    logger.debug(f"Ignoring non-image response from {url} ({result.content_type or 'no content type'})")
    return None


async def find_favicon(fetcher: FeedFetcher, site_url: str) -> Optional[bytes]:
    """Return icon bytes for ``site_url``, or None if nothing usable was found."""
    root = site_root(site_url)
    if root is None:
        return None

    icon = await _try_icon(fetcher, f"{root}favicon.ico")
    if icon:
        return icon

    for page_url in dict.fromkeys([site_url, root]):
        try:
            page = await fetcher.fetch(page_url, timeout=config.FAVICON_TIMEOUT)
        except FetchError as e:
            logger.debug(f"Could not load {page_url} for icon links: {e}")
            continue
        for icon_url in find_icon_links(page.text(), page.url):
            icon = await _try_icon(fetcher, icon_url)
            if icon:
                return icon

    return None
