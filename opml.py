#!/usr/bin/env python3
"""
OPML subscription list import.

An ``<outline>`` with an ``xmlUrl`` is a feed; one without is a folder.
Folders nested deeper than one level are flattened into their top-level
folder, since feeds belong to at most one folder.
"""

from dataclasses import dataclass, field
from typing import List, Union

from bs4 import BeautifulSoup

from config import get_logger
from errors import ValidationError
from utils import validate_url

logger = get_logger("opml")


@dataclass
class OpmlFeed:
    title: str
    feed_url: str
    site_url: str = ""


@dataclass
class OpmlFolder:
    title: str = ""
    feeds: List[OpmlFeed] = field(default_factory=list)
    folders: List["OpmlFolder"] = field(default_factory=list)

    def all_feeds(self) -> List[OpmlFeed]:
        """Feeds of this folder and every folder below it."""
        feeds = list(self.feeds)
        for folder in self.folders:
            feeds.extend(folder.all_feeds())
        return feeds


def _outline_title(outline) -> str:
    return (outline.get('title') or outline.get('text') or '').strip()


def _read_outlines(parent, folder: OpmlFolder) -> None:
    for outline in parent.find_all('outline', recursive=False):
        feed_url = (outline.get('xmlUrl') or outline.get('xmlurl') or '').strip()
        if feed_url:
            if not validate_url(feed_url):
                logger.warning(f"Skipping outline with invalid feed URL: {feed_url}")
                continue
            folder.feeds.append(OpmlFeed(
                title=_outline_title(outline) or feed_url,
                feed_url=feed_url,
                site_url=(outline.get('htmlUrl') or outline.get('htmlurl') or '').strip(),
            ))
            continue
        child = OpmlFolder(title=_outline_title(outline))
        _read_outlines(outline, child)
        folder.folders.append(child)


def parse_opml(data: Union[str, bytes]) -> OpmlFolder:
    """Parse an OPML document into a root folder.

    Raises:
        ValidationError: if the document has no OPML body.
    """
    soup = BeautifulSoup(data, 'xml')
    body = soup.find('body')
    if soup.find('opml') is None or body is None:
        raise ValidationError("not an OPML document")

    root = OpmlFolder()
    _read_outlines(body, root)
    logger.info(
        f"OPML: {len(root.feeds)} top-level feeds, {len(root.folders)} folders, "
        f"{len(root.all_feeds())} feeds in total"
    )
    return root
