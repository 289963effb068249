import asyncio

import pytest
from aiohttp import web

from errors import FetchTimeout, HTTPStatusError, NetworkError, ResponseTooLarge, TooManyRedirects
from fetcher import FeedFetcher, normalize_http_date
from feed_samples import rss_document


@pytest.mark.asyncio
async def test_fetch_ok_returns_body_and_validators(site, fetcher):
    site.serve('/feed.xml', rss_document([1, 2]), headers={
        'ETag': '"v1"',
        'Last-Modified': 'Sat, 15 Nov 2025 16:00:00 GMT',
    })

    result = await fetcher.fetch(site.url('/feed.xml'))

    assert result.status == 200
    assert not result.not_modified
    assert b"<rss" in result.body
    assert result.content_type == 'application/rss+xml'
    assert result.charset == 'utf-8'
    assert result.etag == '"v1"'
    assert result.last_modified == 'Sat, 15 Nov 2025 16:00:00 GMT'
    assert site.requests[0].headers['User-Agent'] == fetcher.user_agent


@pytest.mark.asyncio
async def test_fetch_not_modified_sends_conditional_headers(site, fetcher):
    def _conditional(request):
        if request.headers.get('If-None-Match') == '"abc"':
            return web.Response(status=304)
        return web.Response(text=rss_document([1]), content_type='application/rss+xml')

    site.routes['/feed.xml'] = _conditional

    # Unquoted stored ETags get quoted on the way out
    result = await fetcher.fetch(site.url('/feed.xml'), etag='abc',
                                 last_modified='Sat, 15 Nov 2025 16:00:00 +0000')

    assert result.not_modified
    assert result.body == b""
    assert result.etag == 'abc'
    request = site.requests[0]
    assert request.headers['If-None-Match'] == '"abc"'
    assert request.headers['If-Modified-Since'] == 'Sat, 15 Nov 2025 16:00:00 GMT'


@pytest.mark.asyncio
async def test_fetch_http_error(site, fetcher):
    with pytest.raises(HTTPStatusError) as excinfo:
        await fetcher.fetch(site.url('/missing.xml'))

    assert excinfo.value.status == 404
    assert excinfo.value.kind == 'http-error:404'
    assert str(excinfo.value) == 'http-error:404'


@pytest.mark.asyncio
async def test_fetch_timeout(site):
    async def _slow(request):
        await asyncio.sleep(2)
        return web.Response(text="late")

    site.routes['/slow'] = _slow
    client = FeedFetcher(timeout=0.2)
    try:
        with pytest.raises(FetchTimeout) as excinfo:
            await client.fetch(site.url('/slow'))
    finally:
        await client.close()

    assert str(excinfo.value) == 'timeout'


@pytest.mark.asyncio
async def test_fetch_redirect_loop(site):
    site.routes['/loop'] = lambda request: web.Response(status=302, headers={'Location': '/loop'})
    client = FeedFetcher(timeout=5.0, max_redirects=3)
    try:
        with pytest.raises(TooManyRedirects) as excinfo:
            await client.fetch(site.url('/loop'))
    finally:
        await client.close()

    assert excinfo.value.kind == 'too-many-redirects'


@pytest.mark.asyncio
async def test_fetch_follows_redirect_and_reports_final_url(site, fetcher):
    site.routes['/old'] = lambda request: web.Response(status=301, headers={'Location': '/new.xml'})
    site.serve('/new.xml', rss_document([1]))

    result = await fetcher.fetch(site.url('/old'))

    assert result.url == site.url('/new.xml')
    assert result.status == 200


@pytest.mark.asyncio
async def test_fetch_rejects_oversized_body(site):
    site.serve('/big', b"x" * 8192, content_type='application/octet-stream')
    client = FeedFetcher(timeout=5.0, max_bytes=1024)
    try:
        with pytest.raises(ResponseTooLarge):
            await client.fetch(site.url('/big'))
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_fetch_connection_refused(fetcher):
    with pytest.raises(NetworkError) as excinfo:
        await fetcher.fetch('http://127.0.0.1:1/feed.xml')

    assert str(excinfo.value).startswith('network-error')


@pytest.mark.asyncio
async def test_get_body_decodes_text(site, fetcher):
    site.serve('/page', "<html><body>café</body></html>", content_type='text/html')

    body = await fetcher.get_body(site.url('/page'))

    assert "café" in body


def test_normalize_http_date():
    assert normalize_http_date('Sat, 15 Nov 2025 17:00:00 +0100') == 'Sat, 15 Nov 2025 16:00:00 GMT'
    assert normalize_http_date('not a date') is None
    assert normalize_http_date(None) is None
