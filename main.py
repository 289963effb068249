#!/usr/bin/env python3
"""
Feed Aggregator command line.

Wires storage, fetcher, refresh scheduler and service together and exposes
them as a few commands:

  run            keep the refresh scheduler running until interrupted
  refresh        run one full refresh cycle and report results
  add URL        subscribe to a feed or page URL
  import FILE    import subscriptions from an OPML file
  status         show feed counters and pending refreshes
  errors         list feeds whose last refresh failed
"""

import asyncio
import sys
import time
import argparse
from typing import Optional

from config import config, get_logger
from errors import FeedError, StorageError, ValidationError
from fetcher import FeedFetcher
from models import DatabaseQueue
from scheduler import RefreshScheduler
from service import FeedService
from telemetry import init_telemetry, trace_span
from utils import format_duration, truncate_string

# Module-specific logger
logger = get_logger("main")
init_telemetry("feed-aggregator")


class FeedAggregator:
    """Owns the long-lived components for one process."""

    def __init__(self, db_path: Optional[str] = None, refresh_on_start: Optional[bool] = None) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.fetcher = FeedFetcher()
        self.scheduler = RefreshScheduler(self.db, self.fetcher, refresh_on_start=refresh_on_start)
        self.service = FeedService(self.db, self.fetcher, self.scheduler)

    async def open(self) -> None:
        await self.db.start()
        await self.fetcher.initialize()
        await self.service.load_settings()

    async def close(self) -> None:
        """Stop the scheduler softly, then release HTTP and database resources."""
        await self.scheduler.stop()
        await self.fetcher.close()
        await self.db.stop()

    async def __aenter__(self) -> "FeedAggregator":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


async def run_forever(aggregator: FeedAggregator) -> None:
    """Run the scheduler until cancelled."""
    await aggregator.scheduler.start()
    logger.info("🕐 Scheduler running, press Ctrl+C to stop")
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        logger.info("👋 Shutting down")


@trace_span("refresh_once", tracer_name="main")
async def refresh_once(aggregator: FeedAggregator) -> int:
    """Refresh every feed once and wait for the cycle to finish."""
    started = time.time()
    queued = await aggregator.service.refresh_feeds()
    await aggregator.scheduler.wait_idle()
    await aggregator.scheduler.wait_background()
    errors = await aggregator.service.feed_errors()
    print(f"📡 Refreshed {queued} feeds in {format_duration(time.time() - started)}")
    if errors:
        print(f"⚠️  {len(errors)} feeds failed, see `errors`")
    return 0 if not errors else 1


async def add_feed(aggregator: FeedAggregator, url: str, folder_id: Optional[int]) -> int:
    result = await aggregator.service.add_feed(url, folder_id=folder_id)
    if result['status'] == 'multiple':
        print("Several feeds found, add one of them explicitly:")
        for choice in result['choice']:
            print(f"  {choice['url']}  {choice['title']}")
        return 1
    if result['status'] == 'notfound':
        print(f"❌ No feed found: {result['error']}")
        return 1

    feed = result['feed']
    await aggregator.scheduler.wait_idle()
    await aggregator.scheduler.wait_background()
    feed = await aggregator.db.execute('get_feed', feed_id=feed['id'])
    print(f"✅ Added feed {feed['id']}: {feed['title']} ({feed['size']} items)")
    if feed['last_error']:
        print(f"⚠️  First refresh failed: {feed['last_error']}")
    return 0


async def import_opml(aggregator: FeedAggregator, path: str) -> int:
    with open(path, 'rb') as f:
        data = f.read()
    counts = await aggregator.service.import_opml(data)
    await aggregator.scheduler.wait_idle()
    await aggregator.scheduler.wait_background()
    print(f"✅ Imported {counts['feeds']} feeds in {counts['folders']} folders")
    return 0


async def print_status(aggregator: FeedAggregator) -> int:
    status = await aggregator.service.status()
    feeds = await aggregator.service.list_feeds()
    stats = {s['feed_id']: s for s in status['stats']}
    total_items = await aggregator.db.execute('count_items')

    print("\n📊 Feed Aggregator Status")
    print(f"   📰 Feeds: {len(feeds)}")
    print(f"   🗂  Items: {total_items}")
    print(f"   ⏳ Pending: {status['running']} (queued {status['queued']})")
    for feed in feeds:
        counters = stats.get(feed['id'], {'unread': 0, 'starred': 0})
        marker = "⚠️ " if feed['last_error'] else "  "
        print(f" {marker}[{feed['id']:>4}] {truncate_string(feed['title'], 50):<50} "
              f"{feed['size']:>5} items, {counters['unread']} unread, {counters['starred']} starred")
    return 0


async def print_errors(aggregator: FeedAggregator) -> int:
    errors = await aggregator.service.feed_errors()
    if not errors:
        print("No feed errors")
        return 0
    for feed_id, error in sorted(errors.items()):
        print(f"[{feed_id:>4}] {error}")
    return 1


async def run_command(args: argparse.Namespace) -> int:
    # Only the long-running mode refreshes on start; one-shot commands do their own
    refresh_on_start = None if args.mode == 'run' else False
    async with FeedAggregator(args.database, refresh_on_start=refresh_on_start) as aggregator:
        if args.mode == 'run':
            await run_forever(aggregator)
            return 0
        if args.mode == 'refresh':
            return await refresh_once(aggregator)
        if args.mode == 'add':
            return await add_feed(aggregator, args.target, args.folder)
        if args.mode == 'import':
            return await import_opml(aggregator, args.target)
        if args.mode == 'status':
            return await print_status(aggregator)
        if args.mode == 'errors':
            return await print_errors(aggregator)
    return 2


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='Feed Aggregator')
    parser.add_argument('mode', choices=['run', 'refresh', 'add', 'import', 'status', 'errors'],
                        help='Operation mode')
    parser.add_argument('target', nargs='?',
                        help='Feed/page URL for add, OPML file for import')
    parser.add_argument('--folder', type=int,
                        help='Folder id for add')
    parser.add_argument('--database', type=str,
                        help='SQLite database path (default: DATABASE_PATH)')

    args = parser.parse_args()
    if args.mode in ('add', 'import') and not args.target:
        parser.error(f"{args.mode} needs a target")

    logger.debug(f"Configuration: {config.get_config_summary()}")

    try:
        sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        logger.info("👋 Feed aggregator shutting down")
    except (ValidationError, FeedError, StorageError, OSError) as e:
        logger.error(f"💥 {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
