import os

# Keep tracing out of unit tests; must be set before any project module is imported
os.environ.setdefault("DISABLE_TELEMETRY", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import asyncio
from collections import Counter

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from fetcher import FeedFetcher
from models import DatabaseQueue
from scheduler import RefreshScheduler


class FeedSite:
    """A tiny local web site whose pages can be swapped at runtime.

    ``routes`` maps a path to either a ``web.Response`` factory (any callable
    taking the request, sync or async) or a tuple ``(body, content_type)``.
    Unknown paths answer 404. Every request is counted in ``hits``.
    """

    def __init__(self):
        self.routes = {}
        self.hits = Counter()
        self.requests = []
        self.app = web.Application()
        self.app.router.add_route('*', '/{tail:.*}', self._handle)
        self.server = None

    def url(self, path: str) -> str:
        return str(self.server.make_url(path))

    def serve(self, path, body, content_type='application/rss+xml', status=200, headers=None):
        def _respond(request):
            if isinstance(body, bytes):
                return web.Response(body=body, status=status, content_type=content_type, headers=headers)
            return web.Response(text=body, status=status, content_type=content_type, headers=headers)
        self.routes[path] = _respond

    async def _handle(self, request):
        self.hits[request.path] += 1
        self.requests.append(request)
        handler = self.routes.get(request.path)
        if handler is None:
            return web.Response(status=404, text="not found")
        response = handler(request)
        if asyncio.iscoroutine(response):
            response = await response
        return response


@pytest_asyncio.fixture
async def site():
    feed_site = FeedSite()
    server = TestServer(feed_site.app)
    await server.start_server()
    feed_site.server = server
    try:
        yield feed_site
    finally:
        await server.close()


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()


@pytest_asyncio.fixture
async def fetcher():
    client = FeedFetcher(timeout=5.0)
    await client.initialize()
    try:
        yield client
    finally:
        await client.close()


@pytest_asyncio.fixture
async def make_scheduler(db, fetcher):
    created = []

    def _make(**kwargs):
        kwargs.setdefault('interval', 0)
        kwargs.setdefault('refresh_on_start', False)
        kwargs.setdefault('retention_days', 0)
        scheduler = RefreshScheduler(db, fetcher, **kwargs)
        created.append(scheduler)
        return scheduler

    yield _make
    for scheduler in created:
        await scheduler.stop()
