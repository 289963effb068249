import asyncio

import pytest
from aiohttp import web

import scheduler as scheduler_module
from errors import ValidationError
from scheduler import FeedState
from feed_samples import rss_document


async def _subscribe(db, site, path):
    return await db.execute('create_feed', title='', description='', link='', feed_link=site.url(path))


def _gated(site, path, gate, numbers=(1, 2, 3)):
    async def _handler(request):
        await gate.wait()
        return web.Response(text=rss_document(numbers), content_type='application/rss+xml')
    site.routes[path] = _handler


async def _wait_for(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_concurrent_refreshes_of_one_feed_fetch_once(db, site, make_scheduler):
    gate = asyncio.Event()
    _gated(site, '/feed.xml', gate)
    feed = await _subscribe(db, site, '/feed.xml')
    scheduler = make_scheduler(workers=4)

    results = await asyncio.gather(*[scheduler.refresh_one(feed['id']) for _ in range(10)])

    assert results.count(True) == 1
    assert scheduler.pending_count() == 1
    assert scheduler.feed_state(feed['id']) is FeedState.FETCHING
    assert await scheduler.refresh_all() == 0

    gate.set()
    await scheduler.wait_idle()

    assert site.hits['/feed.xml'] == 1
    assert scheduler.pending_count() == 0
    assert scheduler.feed_state(feed['id']) is FeedState.IDLE


@pytest.mark.asyncio
async def test_pending_is_bounded_by_pool_and_drains(db, site, make_scheduler):
    gate = asyncio.Event()
    for n in range(5):
        _gated(site, f'/feed{n}.xml', gate)
        await _subscribe(db, site, f'/feed{n}.xml')
    scheduler = make_scheduler(workers=2)

    assert await scheduler.refresh_all() == 5
    assert scheduler.pending_count() == 2
    assert scheduler.queued_count() == 3

    samples = []
    gate.set()
    while scheduler.pending_count() or scheduler.queued_count():
        samples.append(scheduler.pending_count())
        await asyncio.sleep(0.005)
    await scheduler.wait_idle()

    assert scheduler.pending_count() == 0
    assert samples == sorted(samples, reverse=True)
    assert all(sample <= 2 for sample in samples)
    assert sum(site.hits[f'/feed{n}.xml'] for n in range(5)) == 5


@pytest.mark.asyncio
async def test_not_modified_skips_parse_and_keeps_error(db, site, make_scheduler, monkeypatch):
    def _conditional(request):
        if request.headers.get('If-None-Match') == '"v1"':
            return web.Response(status=304)
        return web.Response(text=rss_document([1, 2]), content_type='application/rss+xml',
                            headers={'ETag': '"v1"'})

    site.routes['/feed.xml'] = _conditional
    feed = await _subscribe(db, site, '/feed.xml')
    scheduler = make_scheduler()

    await scheduler.refresh_one(feed['id'])
    await scheduler.wait_idle()
    assert (await db.execute('get_feed', feed_id=feed['id']))['size'] == 2

    parse_calls = []
    original_parse = scheduler_module.parse_feed

    def _counting_parse(*args, **kwargs):
        parse_calls.append(args)
        return original_parse(*args, **kwargs)

    monkeypatch.setattr(scheduler_module, 'parse_feed', _counting_parse)
    await db.execute('set_feed_error', feed_id=feed['id'], error='earlier failure')

    await scheduler.refresh_one(feed['id'])
    await scheduler.wait_idle()

    assert parse_calls == []
    assert site.hits['/feed.xml'] == 2
    stored = await db.execute('get_feed', feed_id=feed['id'])
    assert stored['last_error'] == 'earlier failure'
    assert stored['size'] == 2


@pytest.mark.asyncio
async def test_failure_is_recorded_and_cleared_on_success(db, site, make_scheduler):
    good = await _subscribe(db, site, '/good.xml')
    bad = await _subscribe(db, site, '/bad.xml')
    site.serve('/good.xml', rss_document([1]))
    site.serve('/bad.xml', "<html><body>not a feed</body></html>", content_type='text/html')
    scheduler = make_scheduler()

    await scheduler.refresh_all()
    await scheduler.wait_idle()

    errors = await db.execute('get_feed_errors')
    assert list(errors) == [bad['id']]
    assert (await db.execute('get_feed', feed_id=good['id']))['size'] == 1
    assert scheduler.feed_state(bad['id']) is FeedState.IDLE
    # Validators are only stored after a successful merge
    assert (await db.execute('get_http_state', feed_id=bad['id']))['last_refreshed'] == 0

    site.routes.pop('/bad.xml')
    await scheduler.refresh_one(bad['id'])
    await scheduler.wait_idle()
    assert (await db.execute('get_feed_errors'))[bad['id']] == 'http-error:404'

    site.serve('/bad.xml', rss_document([1, 2]))
    await scheduler.refresh_one(bad['id'])
    await scheduler.wait_idle()
    assert await db.execute('get_feed_errors') == {}


@pytest.mark.asyncio
async def test_refresh_fills_title_and_indexes_new_items(db, site, make_scheduler):
    site.serve('/feed.xml', rss_document([1, 2], title="Fresh Title", link="https://fresh.example/"))
    feed = await _subscribe(db, site, '/feed.xml')
    scheduler = make_scheduler()

    await scheduler.refresh_one(feed['id'])
    await scheduler.wait_idle()

    stored = await db.execute('get_feed', feed_id=feed['id'])
    assert stored['title'] == "Fresh Title"
    assert stored['link'] == "https://fresh.example/"
    assert db.conn.execute("SELECT COUNT(*) FROM search").fetchone()[0] == 2


@pytest.mark.asyncio
async def test_refresh_unknown_feed_is_a_validation_error(make_scheduler):
    scheduler = make_scheduler()

    with pytest.raises(ValidationError):
        await scheduler.refresh_one(12345)
    assert scheduler.pending_count() == 0


@pytest.mark.asyncio
async def test_interval_change_resets_the_timer(db, site, make_scheduler):
    site.serve('/feed.xml', rss_document([1]))
    await _subscribe(db, site, '/feed.xml')
    scheduler = make_scheduler(interval=60)
    await scheduler.start()
    await asyncio.sleep(0.05)
    assert site.hits['/feed.xml'] == 0

    scheduler.set_interval(0.2)

    await _wait_for(lambda: site.hits['/feed.xml'] >= 1, timeout=2.0)
    await scheduler.stop()
    assert not scheduler.running


@pytest.mark.asyncio
async def test_zero_interval_disables_ticks(db, site, make_scheduler):
    site.serve('/feed.xml', rss_document([1]))
    await _subscribe(db, site, '/feed.xml')
    scheduler = make_scheduler(interval=0.1)
    await scheduler.start()
    scheduler.set_interval(0)

    await asyncio.sleep(0.4)

    assert site.hits['/feed.xml'] == 0
    with pytest.raises(ValueError):
        scheduler.set_interval(-1)


@pytest.mark.asyncio
async def test_refresh_on_start(db, site, make_scheduler):
    site.serve('/feed.xml', rss_document([1, 2, 3]))
    feed = await _subscribe(db, site, '/feed.xml')
    scheduler = make_scheduler(refresh_on_start=True)

    await scheduler.start()
    await scheduler.wait_idle()

    assert (await db.execute('get_feed', feed_id=feed['id']))['size'] == 3
    assert scheduler.last_attempt(feed['id']) is not None
    assert scheduler.last_attempt(feed['id'] + 1) is None


@pytest.mark.asyncio
async def test_forget_drops_queued_feed(db, site, make_scheduler):
    gate = asyncio.Event()
    _gated(site, '/a.xml', gate)
    _gated(site, '/b.xml', gate)
    first = await _subscribe(db, site, '/a.xml')
    second = await _subscribe(db, site, '/b.xml')
    scheduler = make_scheduler(workers=1)

    await scheduler.refresh_all()
    assert scheduler.queued_count() == 1
    scheduler.forget(second['id'])
    assert scheduler.queued_count() == 0

    gate.set()
    await scheduler.wait_idle()
    assert site.hits['/a.xml'] == 1
    assert site.hits['/b.xml'] == 0
    assert scheduler.feed_state(first['id']) is FeedState.IDLE


@pytest.mark.asyncio
async def test_hanging_feed_holds_only_one_slot(db, site, make_scheduler):
    gate = asyncio.Event()
    _gated(site, '/slow.xml', gate)
    slow = await _subscribe(db, site, '/slow.xml')
    fast = []
    for n in range(5):
        site.serve(f'/fast{n}.xml', rss_document([n]))
        fast.append(await _subscribe(db, site, f'/fast{n}.xml'))
    scheduler = make_scheduler(workers=2)

    assert await scheduler.refresh_one(slow['id'])
    for feed in fast:
        assert await scheduler.refresh_one(feed['id'])

    await _wait_for(lambda: all(site.hits[f'/fast{n}.xml'] == 1 for n in range(5))
                    and scheduler.pending_count() == 1)

    assert scheduler.queued_count() == 0
    assert scheduler.feed_state(slow['id']) is FeedState.FETCHING
    for feed in fast:
        assert scheduler.feed_state(feed['id']) is FeedState.IDLE
        assert (await db.execute('get_feed', feed_id=feed['id']))['size'] == 1

    gate.set()
    await scheduler.wait_idle()
    assert (await db.execute('get_feed', feed_id=slow['id']))['size'] == 3
