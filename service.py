#!/usr/bin/env python3
"""
Application facade used by the API layer and the CLI.

``FeedService`` combines storage, the fetcher and the refresh scheduler into
the operations a client needs: subscribing, folder and item management,
settings, OPML import and refresh control. User-facing input problems raise
``ValidationError``; background refresh problems never surface here, they are
read back through ``feed_errors()``.
"""

from asyncio import get_running_loop
from collections import OrderedDict
from dataclasses import dataclass
from functools import partial
from hashlib import md5
from typing import Any, Dict, List, Optional, Union

from readability import Document

from config import config, get_logger
from discovery import DiscoveryResult, discover_feed
from errors import FeedError, ValidationError
from fetcher import FeedFetcher
from models import DatabaseQueue, ITEM_STATUSES
from opml import parse_opml
from scheduler import RefreshScheduler
from settings import merge_with_defaults, validate_settings
from telemetry import trace_span
from utils import sniff_image_type, validate_url

logger = get_logger("service")

# Marks "argument not given" where None is a meaningful value
_UNSET = object()


@dataclass
class FeedIcon:
    content_type: str
    data: bytes
    etag: str


class FeedService:
    """Operations exposed to clients, backed by an injected scheduler."""

    def __init__(self, db: DatabaseQueue, fetcher: FeedFetcher, scheduler: RefreshScheduler,
                 icon_cache_size: Optional[int] = None):
        self.db = db
        self.fetcher = fetcher
        self.scheduler = scheduler
        self.icon_cache_size = icon_cache_size or config.ICON_CACHE_SIZE
        self._icons: "OrderedDict[int, Optional[FeedIcon]]" = OrderedDict()
        scheduler.add_icon_listener(self.evict_icon)

    # Refresh control
    async def refresh_feeds(self) -> int:
        return await self.scheduler.refresh_all()

    async def refresh_feed(self, feed_id: int) -> bool:
        return await self.scheduler.refresh_one(feed_id)

    def feeds_pending(self) -> int:
        return self.scheduler.pending_count()

    def set_refresh_rate(self, seconds: float) -> None:
        """Change the refresh interval (seconds, 0 disables automatic refresh)."""
        try:
            self.scheduler.set_interval(seconds)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    async def status(self) -> Dict[str, Any]:
        """Progress and per-feed counters for polling clients."""
        return {
            'running': self.scheduler.pending_count(),
            'queued': self.scheduler.queued_count(),
            'stats': await self.db.execute('feed_stats'),
        }

    async def feed_errors(self) -> Dict[int, str]:
        return await self.db.execute('get_feed_errors')

    async def load_settings(self) -> Dict[str, Any]:
        """Apply stored settings that affect the running process."""
        current = await self.get_settings()
        self.set_refresh_rate(current['refresh_rate'] * 60)
        return current

    # Feeds
    async def _require_feed(self, feed_id: int) -> Dict[str, Any]:
        feed = await self.db.execute('get_feed', feed_id=feed_id)
        if feed is None:
            raise ValidationError(f"unknown feed {feed_id}")
        return feed

    async def _require_folder(self, folder_id: int) -> Dict[str, Any]:
        folder = await self.db.execute('get_folder', folder_id=folder_id)
        if folder is None:
            raise ValidationError(f"unknown folder {folder_id}")
        return folder

    async def list_feeds(self) -> List[Dict[str, Any]]:
        return await self.db.execute('list_feeds')

    async def discover_feed(self, url: str) -> DiscoveryResult:
        """Resolve a page or feed URL.

        Raises:
            ValidationError: for a malformed URL.
            FetchError, DiscoveryError: when nothing usable is found.
        """
        if not validate_url(url):
            raise ValidationError(f"invalid URL: {url!r}")
        return await discover_feed(self.fetcher, url.strip())

    @trace_span("add_feed", tracer_name="service", attr_from_args=lambda self, url, folder_id=None: {"http.url": url})
    async def add_feed(self, url: str, folder_id: Optional[int] = None) -> Dict[str, Any]:
        """Subscribe to ``url``.

        Returns a dict whose ``status`` is ``success`` (with ``feed``),
        ``multiple`` (with ``choice``, the candidate links) or ``notfound``
        (with ``error``).
        """
        if folder_id is not None:
            await self._require_folder(folder_id)

        try:
            result = await self.discover_feed(url)
        except FeedError as e:
            logger.info(f"No feed found at {url}: {e}")
            return {'status': 'notfound', 'error': str(e)}

        if result.ambiguous:
            return {
                'status': 'multiple',
                'choice': [{'url': c.url, 'title': c.title} for c in result.candidates],
            }

        parsed = result.feed.feed
        feed = await self.db.execute(
            'create_feed',
            title=parsed.title,
            description=parsed.description,
            link=parsed.site_url,
            feed_link=result.feed_url,
            folder_id=folder_id,
        )
        logger.info(f"Subscribed to {result.feed_url} as feed {feed['id']}")

        self.scheduler.enqueue(feed)
        if not feed['has_icon']:
            self.scheduler.find_feed_favicon(feed)
        return {'status': 'success', 'feed': feed}

    async def update_feed(self, feed_id: int, title: Any = _UNSET, folder_id: Any = _UNSET) -> Dict[str, Any]:
        """Rename a feed and/or move it to a folder (``folder_id=None`` moves it to the top level)."""
        await self._require_feed(feed_id)
        if title is not _UNSET:
            if not isinstance(title, str) or not title.strip():
                raise ValidationError("feed title must not be empty")
            await self.db.execute('rename_feed', feed_id=feed_id, title=title.strip())
        if folder_id is not _UNSET:
            if folder_id is not None:
                await self._require_folder(folder_id)
            await self.db.execute('update_feed_folder', feed_id=feed_id, folder_id=folder_id)
        return await self.db.execute('get_feed', feed_id=feed_id)

    async def delete_feed(self, feed_id: int) -> None:
        """Delete a feed with its items; drops its scheduler state and cached icon."""
        if not await self.db.execute('delete_feed', feed_id=feed_id):
            raise ValidationError(f"unknown feed {feed_id}")
        self.scheduler.forget(feed_id)
        self.evict_icon(feed_id)
        logger.info(f"Deleted feed {feed_id}")

    # Icons
    def evict_icon(self, feed_id: int) -> None:
        self._icons.pop(feed_id, None)

    def cached_icon_ids(self) -> List[int]:
        return list(self._icons.keys())

    async def feed_icon(self, feed_id: int) -> Optional[FeedIcon]:
        """Icon of a feed, served from a bounded LRU cache."""
        if feed_id in self._icons:
            self._icons.move_to_end(feed_id)
            return self._icons[feed_id]

        data = await self.db.execute('get_feed_icon', feed_id=feed_id)
        icon = None
        if data:
            icon = FeedIcon(
                content_type=sniff_image_type(data) or 'application/octet-stream',
                data=data,
                etag=md5(data).hexdigest()[:16],
            )

        self._icons[feed_id] = icon
        while len(self._icons) > self.icon_cache_size:
            self._icons.popitem(last=False)
        return icon

    def find_feed_favicon(self, feed: Dict[str, Any]):
        return self.scheduler.find_feed_favicon(feed)

    async def find_favicons(self) -> int:
        return await self.scheduler.find_favicons()

    # Pages
    async def get_body(self, url: str) -> str:
        if not validate_url(url):
            raise ValidationError(f"invalid URL: {url!r}")
        return await self.fetcher.get_body(url)

    async def crawl_page(self, url: str) -> Dict[str, str]:
        """Fetch a page and extract its readable content (unsanitized)."""
        body = await self.get_body(url)
        loop = get_running_loop()
        document = await loop.run_in_executor(None, partial(Document, body, url=url))
        title = await loop.run_in_executor(None, document.short_title)
        content = await loop.run_in_executor(None, document.summary)
        return {'title': title, 'content': content}

    # Folders
    async def list_folders(self) -> List[Dict[str, Any]]:
        return await self.db.execute('list_folders')

    async def create_folder(self, title: str) -> Dict[str, Any]:
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("folder title must not be empty")
        return await self.db.execute('create_folder', title=title.strip())

    async def rename_folder(self, folder_id: int, title: str) -> None:
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("folder title must not be empty")
        if not await self.db.execute('rename_folder', folder_id=folder_id, title=title.strip()):
            raise ValidationError(f"unknown folder {folder_id}")

    async def toggle_folder(self, folder_id: int, is_expanded: bool) -> None:
        if not await self.db.execute('toggle_folder_expanded', folder_id=folder_id, is_expanded=bool(is_expanded)):
            raise ValidationError(f"unknown folder {folder_id}")

    async def delete_folder(self, folder_id: int) -> None:
        if not await self.db.execute('delete_folder', folder_id=folder_id):
            raise ValidationError(f"unknown folder {folder_id}")

    # Items
    async def list_items(self, feed_id: Optional[int] = None, folder_id: Optional[int] = None,
                         status: Optional[str] = None, search: Optional[str] = None,
                         after: Optional[int] = None) -> Dict[str, Any]:
        """One page of items plus whether more follow."""
        if status is not None and status not in ITEM_STATUSES:
            raise ValidationError(f"invalid status {status!r}")
        per_page = config.ITEMS_PER_PAGE
        current = await self.get_settings()
        items = await self.db.execute(
            'list_items',
            feed_id=feed_id,
            folder_id=folder_id,
            status=status,
            search=search,
            after=after,
            limit=per_page + 1,
            newest_first=current['sort_newest_first'],
        )
        return {'list': items[:per_page], 'has_more': len(items) > per_page}

    async def get_item(self, item_id: int) -> Dict[str, Any]:
        item = await self.db.execute('get_item', item_id=item_id)
        if item is None:
            raise ValidationError(f"unknown item {item_id}")
        return item

    async def update_item_status(self, item_id: int, status: str) -> None:
        if status not in ITEM_STATUSES:
            raise ValidationError(f"invalid status {status!r}")
        if not await self.db.execute('update_item_status', item_id=item_id, status=status):
            raise ValidationError(f"unknown item {item_id}")

    async def mark_items_read(self, feed_id: Optional[int] = None, folder_id: Optional[int] = None) -> int:
        return await self.db.execute('mark_items_read', feed_id=feed_id, folder_id=folder_id)

    # Settings
    async def get_settings(self) -> Dict[str, Any]:
        return merge_with_defaults(await self.db.execute('get_settings'))

    async def update_settings(self, values: Any) -> Dict[str, Any]:
        """Validate and store a partial settings update.

        Raises:
            ValidationError: for unknown keys or ill-typed values; nothing is stored.
        """
        values = validate_settings(values)
        if values:
            await self.db.execute('update_settings', values=values)
        if 'refresh_rate' in values:
            self.set_refresh_rate(values['refresh_rate'] * 60)
        return await self.get_settings()

    # OPML
    async def import_opml(self, data: Union[str, bytes]) -> Dict[str, int]:
        """Create feeds and folders from an OPML document, then refresh everything."""
        root = parse_opml(data)
        created = 0
        for entry in root.feeds:
            await self._create_imported_feed(entry, None)
            created += 1
        folders = 0
        for folder in root.folders:
            folder_id = None
            if folder.title:
                folder_id = (await self.db.execute('create_folder', title=folder.title))['id']
                folders += 1
            for entry in folder.all_feeds():
                await self._create_imported_feed(entry, folder_id)
                created += 1

        await self.find_favicons()
        queued = await self.refresh_feeds()
        logger.info(f"Imported {created} feeds in {folders} folders; {queued} queued for refresh")
        return {'feeds': created, 'folders': folders, 'queued': queued}

    async def _create_imported_feed(self, entry, folder_id: Optional[int]) -> Dict[str, Any]:
        return await self.db.execute(
            'create_feed',
            title=entry.title,
            description='',
            link=entry.site_url,
            feed_link=entry.feed_url,
            folder_id=folder_id,
        )
