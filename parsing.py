#!/usr/bin/env python3
"""
Feed document parsing.

XML formats (RSS 0.9x/1.0/2.0, Atom 0.3/1.0) go through feedparser; JSON
Feed 1.0/1.1 is decoded directly, since feedparser has no JSON reader. Both
are normalized into ``ParseResult``. Malformed XML is salvaged: whatever
entries feedparser recovered are returned with ``soft_failure`` set. Only a
payload that yields neither a recognizable format nor any entries is a
``StructuralParseError``.
"""

from calendar import timegm
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
import json
from typing import Any, Dict, List, Optional, Union

import feedparser

from config import get_logger
from errors import StructuralParseError
from utils import absolute_url

logger = get_logger("parsing")

DATE_FIELDS = ('published', 'updated', 'created')


@dataclass
class ParsedItem:
    title: str = ""
    link: str = ""
    author: str = ""
    content: str = ""
    date: Optional[int] = None
    guid: Optional[str] = None


@dataclass
class ParsedFeed:
    title: str = ""
    site_url: str = ""
    description: str = ""
    version: str = ""
    items: List[ParsedItem] = field(default_factory=list)


@dataclass
class ParseResult:
    """Outcome of parsing one document.

    Attributes:
        feed: Everything that could be read.
        soft_failure: The document was malformed but some data was recovered.
        error: Description of the malformation when ``soft_failure`` is set.
    """

    feed: ParsedFeed
    soft_failure: bool = False
    error: Optional[str] = None

    @property
    def items(self) -> List[ParsedItem]:
        return self.feed.items


def _get_entry_value(entry, name: str) -> Any:
    """Safely fetch feedparser entry fields with attribute or dict access."""
    if entry is None:
        return None
    getter = getattr(entry, 'get', None)
    if callable(getter):
        return getter(name)
    return getattr(entry, name, None)


def _struct_to_timestamp(value: Any) -> Optional[int]:
    # feedparser normalizes *_parsed values to UTC struct_time
    try:
        return int(timegm(tuple(value)[:9]))
    except (OverflowError, ValueError, TypeError):
        return None


def _string_to_timestamp(value: str) -> Optional[int]:
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, OverflowError):
        dt = None
    if dt is None:
        try:
            dt = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def parse_entry_date(entry) -> Optional[int]:
    """Return the entry's publication timestamp, or None when it has none."""
    for name in DATE_FIELDS:
        parsed = _get_entry_value(entry, f"{name}_parsed")
        if parsed:
            timestamp = _struct_to_timestamp(parsed)
            if timestamp is not None:
                return timestamp
    for name in DATE_FIELDS:
        raw = _get_entry_value(entry, name)
        if isinstance(raw, str) and raw.strip():
            timestamp = _string_to_timestamp(raw)
            if timestamp is not None:
                return timestamp
    return None


def extract_content(entry) -> str:
    """Pick the richest body the entry offers: content, then summary, then description."""
    for content_item in _get_entry_value(entry, 'content') or []:
        value = content_item.get('value') if hasattr(content_item, 'get') else None
        if value:
            return value
    return _get_entry_value(entry, 'summary') or _get_entry_value(entry, 'description') or ""


def _normalize_entry(entry) -> ParsedItem:
    guid = _get_entry_value(entry, 'id') or _get_entry_value(entry, 'guid')
    return ParsedItem(
        title=(_get_entry_value(entry, 'title') or "").strip(),
        link=(_get_entry_value(entry, 'link') or "").strip(),
        author=(_get_entry_value(entry, 'author') or "").strip(),
        content=extract_content(entry),
        date=parse_entry_date(entry),
        guid=guid.strip() if isinstance(guid, str) and guid.strip() else None,
    )


# Warnings feedparser raises for documents that still parsed cleanly
_HARMLESS_BOZO = (feedparser.NonXMLContentType, feedparser.CharacterEncodingOverride)

_JSON_FEED_VERSIONS = {
    'https://jsonfeed.org/version/1': 'json10',
    'https://jsonfeed.org/version/1.1': 'json11',
}


def _looks_like_json(content: Union[bytes, str], content_type: Optional[str]) -> bool:
    if content_type and 'json' in content_type.lower():
        return True
    head = content[:64].lstrip()
    if isinstance(head, bytes):
        # Skip a UTF-8 byte order mark
        head = head.lstrip(b'\xef\xbb\xbf').lstrip()
        return head.startswith(b'{')
    return head.lstrip('\ufeff').startswith('{')


def _json_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _json_author(item: Dict[str, Any]) -> str:
    # 1.1 uses an ``authors`` list, 1.0 a single ``author`` object
    authors = item.get('authors')
    if isinstance(authors, list) and authors and isinstance(authors[0], dict):
        return _json_text(authors[0].get('name'))
    author = item.get('author')
    if isinstance(author, dict):
        return _json_text(author.get('name'))
    return ""


def _json_item(item: Dict[str, Any], base_url: Optional[str]) -> ParsedItem:
    raw_link = _json_text(item.get('url')) or _json_text(item.get('external_url'))
    date = None
    for name in ('date_published', 'date_modified'):
        raw = _json_text(item.get(name))
        if raw:
            date = _string_to_timestamp(raw)
            if date is not None:
                break
    guid = item.get('id')
    if isinstance(guid, (int, float)) and not isinstance(guid, bool):
        guid = str(guid)
    return ParsedItem(
        title=_json_text(item.get('title')),
        link=(absolute_url(raw_link, base_url) or raw_link) if raw_link else "",
        author=_json_author(item),
        content=_json_text(item.get('content_html')) or _json_text(item.get('content_text'))
        or _json_text(item.get('summary')),
        date=date,
        guid=_json_text(guid) or None,
    )


def parse_json_feed(content: Union[bytes, str], base_url: Optional[str] = None) -> ParseResult:
    """Parse a JSON Feed document.

    Raises:
        StructuralParseError: for invalid JSON or a document without an ``items`` list.
    """
    try:
        document = json.loads(content)
    except (ValueError, UnicodeDecodeError) as e:
        raise StructuralParseError(f"invalid JSON: {e}") from e
    if not isinstance(document, dict) or not isinstance(document.get('items'), list):
        raise StructuralParseError("JSON document has no items list")

    site_url = _json_text(document.get('home_page_url'))
    item_base = site_url or base_url
    version = _json_text(document.get('version'))
    feed = ParsedFeed(
        title=_json_text(document.get('title')),
        site_url=site_url,
        description=_json_text(document.get('description')),
        version=_JSON_FEED_VERSIONS.get(version.rstrip('/'), 'json'),
        items=[_json_item(item, item_base) for item in document['items'] if isinstance(item, dict)],
    )
    return ParseResult(feed=feed)


def _bozo_error(parsed) -> Optional[str]:
    """Describe a real malformation, ignoring warnings about well-formed documents."""
    if not parsed.get('bozo'):
        return None
    exc = parsed.get('bozo_exception')
    if isinstance(exc, _HARMLESS_BOZO):
        return None
    if isinstance(exc, feedparser.CharacterEncodingUnknown) and parsed.entries:
        return None
    return f"{exc.__class__.__name__}: {exc}" if exc else "malformed document"


def parse_feed(content: Union[bytes, str], base_url: Optional[str] = None,
               content_type: Optional[str] = None) -> ParseResult:
    """Parse raw feed bytes into a ``ParseResult``.

    ``content_type`` is the served media type. A JSON media type, or a body
    starting with ``{``, selects the JSON Feed reader.

    Raises:
        StructuralParseError: if nothing feed-like could be read from ``content``.
    """
    if _looks_like_json(content, content_type):
        return parse_json_feed(content, base_url)

    response_headers = {}
    if base_url:
        response_headers['content-location'] = base_url
    if content_type:
        response_headers['content-type'] = content_type
    parsed = feedparser.parse(
        content,
        sanitize_html=False,
        resolve_relative_uris=True,
        response_headers=response_headers or None,
    )

    error = _bozo_error(parsed)

    if not parsed.get('version') and not parsed.entries:
        raise StructuralParseError(error or "not a recognizable feed document")

    channel = parsed.feed
    items = [_normalize_entry(entry) for entry in parsed.entries]
    feed = ParsedFeed(
        title=(channel.get('title') or "").strip(),
        site_url=(channel.get('link') or "").strip(),
        description=(channel.get('subtitle') or channel.get('description') or "").strip(),
        version=parsed.get('version') or "",
        items=items,
    )
    result = ParseResult(feed=feed, soft_failure=error is not None, error=error)
    if result.soft_failure:
        logger.debug(f"Recovered {len(items)} items from malformed feed {base_url or ''}: {error}")
    return result
