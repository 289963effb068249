#!/usr/bin/env python3
"""
Merging parsed items into storage.

Each item gets a fingerprint that is stable across fetches: the entry's own
permanent id when the format provides one, otherwise an md5 of title, link
and date. Only fingerprints not yet stored for the feed are inserted, in
source order, so merging the same document twice adds nothing.
"""

from hashlib import md5
from time import time
from typing import Any, Dict, List, Optional

from config import get_logger
from models import DatabaseQueue
from parsing import ParsedItem
from telemetry import trace_span

logger = get_logger("merge")

MAX_GUID_LENGTH = 2048


def item_fingerprint(item: ParsedItem) -> str:
    """Return the dedup key for an item within its feed."""
    if item.guid:
        return item.guid[:MAX_GUID_LENGTH]
    date = "" if item.date is None else str(item.date)
    combined = f"{item.title}{item.link}{date}"
    return md5(combined.encode('utf-8')).hexdigest()


def convert_items(feed_id: int, items: List[ParsedItem], now: Optional[int] = None) -> List[Dict[str, Any]]:
    """Convert parsed items into storage records.

    Duplicate fingerprints inside the same document keep their first
    occurrence. Items without a date are stamped with ``now``.
    """
    now = int(time()) if now is None else now
    records: List[Dict[str, Any]] = []
    seen = set()
    for item in items:
        guid = item_fingerprint(item)
        if guid in seen:
            continue
        seen.add(guid)
        records.append({
            'feed_id': feed_id,
            'guid': guid,
            'title': item.title,
            'link': item.link,
            'author': item.author,
            'content': item.content,
            'date': item.date if item.date is not None else now,
            'status': 'unread',
        })
    return records


@trace_span(
    "merge_items",
    tracer_name="merge",
    attr_from_args=lambda db, feed_id, items: {"feed.id": int(feed_id), "items.parsed": len(items)},
)
async def merge_items(db: DatabaseQueue, feed_id: int, items: List[ParsedItem]) -> int:
    """Persist unseen items for ``feed_id`` and refresh its stored size.

    Returns:
        The number of newly inserted items.
    """
    records = convert_items(feed_id, items)
    if not records:
        return 0

    existing = await db.execute('check_existing_guids', feed_id=feed_id, guids=[r['guid'] for r in records])
    fresh = [record for record in records if record['guid'] not in existing]

    inserted = 0
    if fresh:
        inserted = await db.execute('create_items', items=fresh)

    size = await db.execute('count_feed_items', feed_id=feed_id)
    await db.execute('set_feed_size', feed_id=feed_id, size=size)

    logger.debug(f"Feed {feed_id}: {len(records)} parsed, {len(existing)} known, {inserted} new")
    return inserted
