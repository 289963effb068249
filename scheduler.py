#!/usr/bin/env python3
"""
Refresh scheduler for the feed set.

``RefreshScheduler`` owns the refresh lifecycle of every subscribed feed:

- a recurring tick that calls ``refresh_all()``; changing the interval resets
  the timer instead of waiting out the old one
- a bounded pool of worker slots; feeds beyond the pool size wait in a FIFO
  queue so a hanging server can hold at most one slot
- per-feed state ``idle -> queued -> fetching -> idle``; a feed that is not
  idle is never queued again, so at most one fetch per feed is in flight
- a pending counter (feeds currently fetching) readable without waiting on
  any fetch

Failures are recorded on the feed's ``last_error`` and logged; the feed goes
back to idle and is retried on the next tick.

The scheduler is a plain object. Create one per process and hand it to the
service layer; nothing in this module keeps global state.
"""

import asyncio
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from functools import partial
from time import time
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from config import config, get_logger
from errors import FeedError, StorageError, ValidationError
from favicon import find_favicon
from fetcher import FeedFetcher
from merge import merge_items
from models import DatabaseQueue
from parsing import parse_feed
from telemetry import init_telemetry, trace_span
from utils import format_duration

# Module-specific logger
logger = get_logger("scheduler")

# Initialize telemetry for the scheduler subsystem
init_telemetry("feed-aggregator-scheduler")

MAINTENANCE_INTERVAL_SECONDS = 24 * 3600


class FeedState(Enum):
    IDLE = "idle"
    QUEUED = "queued"
    FETCHING = "fetching"


class RefreshScheduler:
    """Bounded-concurrency refresh worker with a resettable tick."""

    def __init__(self, db: DatabaseQueue, fetcher: FeedFetcher,
                 workers: Optional[int] = None,
                 interval: Optional[float] = None,
                 refresh_on_start: Optional[bool] = None,
                 retention_days: Optional[int] = None):
        """
        Args:
            db: Started storage queue.
            fetcher: Shared HTTP fetcher.
            workers: Worker slots (default: config.WORKER_COUNT).
            interval: Tick interval in seconds; 0 disables the tick
                (default: config.REFRESH_INTERVAL_SECONDS).
            refresh_on_start: Refresh every feed when ``start()`` runs.
            retention_days: Age after which read items are purged by the
                daily maintenance pass; 0 disables it.
        """
        self.db = db
        self.fetcher = fetcher
        self.workers = max(1, int(workers if workers is not None else config.WORKER_COUNT))
        self.refresh_on_start = config.REFRESH_ON_START if refresh_on_start is None else refresh_on_start
        self.retention_days = config.ITEM_RETENTION_DAYS if retention_days is None else retention_days

        self._lock = threading.Lock()
        self._interval = float(interval if interval is not None else config.REFRESH_INTERVAL_SECONDS)
        self._states: Dict[int, FeedState] = {}
        self._queue: Deque[Dict[str, Any]] = deque()
        self._pending = 0
        self._new_items = 0
        self._last_attempt: Dict[int, float] = {}
        self._deleted: Set[int] = set()
        self._last_maintenance = 0.0

        self._interval_changed = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._favicon_semaphore = asyncio.Semaphore(config.FAVICON_CONCURRENCY)
        self._tasks: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()
        self._tick_task: Optional[asyncio.Task] = None
        self._running = False
        self._executor: Optional[ThreadPoolExecutor] = None
        self._icon_listeners: List[Callable[[int], None]] = []

    # Lifecycle
    async def start(self) -> None:
        """Start the tick loop (and an initial refresh when configured)."""
        if self._running:
            return
        self._running = True
        logger.info(
            f"Scheduler started: {self.workers} workers, interval "
            f"{format_duration(self._interval) if self._interval > 0 else 'disabled'}"
        )
        if self.refresh_on_start:
            await self.refresh_all()
        self._tick_task = asyncio.create_task(self._tick_loop())

    async def stop(self, wait: bool = True) -> None:
        """Stop issuing ticks and drop queued feeds.

        In-flight fetches are not aborted; with ``wait`` they are awaited
        (each is bounded by the fetch timeout).
        """
        self._running = False
        self._interval_changed.set()
        if self._tick_task is not None:
            await self._tick_task
            self._tick_task = None

        with self._lock:
            while self._queue:
                feed = self._queue.popleft()
                self._states[feed['id']] = FeedState.IDLE

        if wait:
            pending = list(self._tasks) + list(self._background)
            if pending:
                logger.info(f"Waiting for {len(pending)} in-flight tasks")
                await asyncio.gather(*pending, return_exceptions=True)

        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    # Queries
    def pending_count(self) -> int:
        """Number of feeds whose fetch is in flight right now."""
        with self._lock:
            return self._pending

    def queued_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def feed_state(self, feed_id: int) -> FeedState:
        with self._lock:
            return self._states.get(feed_id, FeedState.IDLE)

    def last_attempt(self, feed_id: int) -> Optional[float]:
        with self._lock:
            return self._last_attempt.get(feed_id)

    @property
    def interval(self) -> float:
        with self._lock:
            return self._interval

    def set_interval(self, seconds: float) -> None:
        """Replace the tick interval; the running timer restarts with it."""
        if seconds < 0:
            raise ValueError("refresh interval must not be negative")
        with self._lock:
            self._interval = float(seconds)
        self._interval_changed.set()
        logger.info(f"Refresh interval set to {format_duration(seconds) if seconds > 0 else 'disabled'}")

    def add_icon_listener(self, callback: Callable[[int], None]) -> None:
        """Register ``callback(feed_id)`` to run after a feed's icon is stored."""
        self._icon_listeners.append(callback)

    def forget(self, feed_id: int) -> None:
        """Drop in-memory state for a deleted feed."""
        with self._lock:
            if self._states.get(feed_id) is FeedState.QUEUED:
                self._queue = deque(f for f in self._queue if f['id'] != feed_id)
            if self._states.get(feed_id) is FeedState.FETCHING:
                self._deleted.add(feed_id)
            else:
                self._states.pop(feed_id, None)
            self._last_attempt.pop(feed_id, None)
            if not self._queue and not self._pending:
                self._idle.set()

    async def wait_idle(self) -> None:
        """Wait until nothing is queued or fetching."""
        await self._idle.wait()

    async def wait_background(self) -> None:
        """Wait for outstanding favicon lookups."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Triggers
    def enqueue(self, feed: Dict[str, Any]) -> bool:
        """Queue a refresh of ``feed`` unless it is already queued or fetching."""
        feed_id = feed['id']
        with self._lock:
            if self._states.get(feed_id, FeedState.IDLE) is not FeedState.IDLE:
                return False
            self._states[feed_id] = FeedState.QUEUED
            self._queue.append(feed)
            self._idle.clear()
        self._dispatch()
        return True

    async def refresh_one(self, feed_id: int) -> bool:
        """Queue one feed. Returns False if it was already queued or fetching.

        Raises:
            ValidationError: if the feed does not exist.
        """
        feed = await self.db.execute('get_feed', feed_id=feed_id)
        if feed is None:
            raise ValidationError(f"unknown feed {feed_id}")
        return self.enqueue(feed)

    @trace_span("refresh_all", tracer_name="scheduler")
    async def refresh_all(self) -> int:
        """Queue every idle feed. Returns the number of feeds queued."""
        feeds = await self.db.execute('list_feeds')
        queued = sum(1 for feed in feeds if self.enqueue(feed))
        logger.info(f"Refresh requested: {queued} of {len(feeds)} feeds queued")
        return queued

    # Worker pool
    def _dispatch(self) -> None:
        """Move queued feeds into free worker slots."""
        while True:
            with self._lock:
                if not self._queue or self._pending >= self.workers:
                    return
                feed = self._queue.popleft()
                self._states[feed['id']] = FeedState.FETCHING
                self._pending += 1
                self._last_attempt[feed['id']] = time()
            task = asyncio.create_task(self._run(feed))
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()!r}")

    async def _run(self, feed: Dict[str, Any]) -> None:
        inserted = 0
        try:
            inserted = await self._refresh_feed(feed)
        finally:
            with self._lock:
                self._pending -= 1
                self._new_items += inserted
                if feed['id'] in self._deleted:
                    self._deleted.discard(feed['id'])
                    self._states.pop(feed['id'], None)
                else:
                    self._states[feed['id']] = FeedState.IDLE
            self._dispatch()
            await self._finish_cycle_if_drained()

    async def _finish_cycle_if_drained(self) -> None:
        with self._lock:
            if self._queue or self._pending:
                return
            new_items, self._new_items = self._new_items, 0

        if new_items:
            try:
                indexed = await self.db.execute('sync_search')
                logger.debug(f"Search index updated with {indexed} items")
            except StorageError as e:
                logger.error(f"Search sync failed: {e}")

        with self._lock:
            if not self._queue and not self._pending:
                self._idle.set()

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="feed-parse")
        return self._executor

    @trace_span(
        "refresh_feed",
        tracer_name="scheduler",
        attr_from_args=lambda self, feed: {"feed.id": int(feed['id']), "http.url": feed.get('feed_link', '')},
    )
    async def _refresh_feed(self, feed: Dict[str, Any]) -> int:
        """Fetch, parse and merge one feed. Returns the number of new items."""
        feed_id = feed['id']
        url = feed['feed_link']
        started = time()
        try:
            http_state = await self.db.execute('get_http_state', feed_id=feed_id)
            result = await self.fetcher.fetch(
                url, etag=http_state.get('etag'), last_modified=http_state.get('last_modified')
            )
            if result.not_modified:
                logger.debug(f"Feed {feed_id} not modified")
                return 0

            loop = asyncio.get_running_loop()
            parsed = await loop.run_in_executor(
                self._get_executor(),
                partial(parse_feed, result.body, result.url, result.content_type or None),
            )
            if parsed.soft_failure:
                logger.warning(f"Feed {feed_id} is malformed, kept {len(parsed.items)} items: {parsed.error}")

            inserted = await merge_items(self.db, feed_id, parsed.items)
            await self.db.execute('fill_feed_metadata', feed_id=feed_id, title=parsed.feed.title, link=parsed.feed.site_url)
            # Validators are stored only once the items are safely merged
            await self.db.execute('set_http_state', feed_id=feed_id,
                                  etag=result.etag, last_modified=result.last_modified)
            await self.db.execute('set_feed_error', feed_id=feed_id, error=None)

            logger.info(f"Refreshed feed {feed_id} ({url}): {inserted} new items in {time() - started:.2f}s")
            return inserted

        except (FeedError, StorageError) as e:
            logger.warning(f"Refresh of feed {feed_id} ({url}) failed: {e}")
            try:
                await self.db.execute('set_feed_error', feed_id=feed_id, error=str(e))
            except StorageError as store_error:
                logger.error(f"Could not record error for feed {feed_id}: {store_error}")
            return 0

    # Tick loop
    async def _tick_loop(self) -> None:
        while self._running:
            self._interval_changed.clear()
            interval = self.interval
            try:
                if interval > 0:
                    await asyncio.wait_for(self._interval_changed.wait(), timeout=interval)
                else:
                    await self._interval_changed.wait()
                # Interval changed (or stop requested): start a fresh timer
                continue
            except asyncio.TimeoutError:
                pass

            if not self._running:
                break
            await self._tick()

    async def _tick(self) -> None:
        try:
            await self.refresh_all()
            await self._maybe_run_maintenance()
        except StorageError as e:
            logger.error(f"Scheduled refresh failed: {e}")

    async def _maybe_run_maintenance(self) -> None:
        if self.retention_days <= 0:
            return
        now = time()
        if now - self._last_maintenance < MAINTENANCE_INTERVAL_SECONDS:
            return
        self._last_maintenance = now
        deleted = await self.db.execute('delete_old_items', retention_days=self.retention_days)
        logger.info(f"Maintenance: purged {deleted} old read items")

    # Favicons
    def find_feed_favicon(self, feed: Dict[str, Any]) -> asyncio.Task:
        """Look up and store the icon for ``feed`` in the background."""
        task = asyncio.create_task(self._find_feed_favicon(feed))
        self._background.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    async def find_favicons(self) -> int:
        """Start icon lookups for every feed without an icon."""
        feeds = await self.db.execute('list_feeds_missing_icons')
        for feed in feeds:
            self.find_feed_favicon(feed)
        if feeds:
            logger.info(f"Looking up icons for {len(feeds)} feeds")
        return len(feeds)

    async def _find_feed_favicon(self, feed: Dict[str, Any]) -> Optional[bytes]:
        site_url = feed.get('link') or feed.get('feed_link')
        async with self._favicon_semaphore:
            icon = await find_favicon(self.fetcher, site_url)
        if not icon:
            logger.debug(f"No icon found for feed {feed['id']}")
            return None
        try:
            await self.db.execute('update_feed_icon', feed_id=feed['id'], icon=icon)
        except StorageError as e:
            logger.warning(f"Could not store icon for feed {feed['id']}: {e}")
            return None
        for callback in self._icon_listeners:
            callback(feed['id'])
        return icon
