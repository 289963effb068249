#!/usr/bin/env python3
"""
HTTP fetcher for feeds, pages and icons.

Performs a single bounded GET per call: one overall timeout, a hop limit on
redirects, a cap on body size, and conditional headers when the caller knows
a previous ETag/Last-Modified. Failures are raised as typed ``FetchError``
subclasses so the scheduler can record a short, stable error string.
"""

from asyncio import TimeoutError
from dataclasses import dataclass
from datetime import timezone
from email.utils import parsedate_to_datetime, format_datetime
from typing import Dict, List, Optional

from aiohttp import ClientSession, ClientError, ClientTimeout, TooManyRedirects as AiohttpTooManyRedirects

from config import config, get_logger
from errors import FetchTimeout, HTTPStatusError, NetworkError, ResponseTooLarge, TooManyRedirects
from telemetry import trace_span

# Module-specific logger
logger = get_logger("fetcher")

# HTTP status codes
HTTP_OK = 200
HTTP_MULTIPLE_CHOICES = 300
HTTP_NOT_MODIFIED = 304

CHUNK_SIZE = 64 * 1024


@dataclass
class FetchResult:
    """Outcome of a successful fetch.

    ``not_modified`` is True for a 304 answer; ``body`` is then empty and
    the caller must not parse it.
    """

    url: str
    status: int
    body: bytes = b""
    content_type: str = ""
    charset: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    not_modified: bool = False

    def text(self) -> str:
        """Decode the body with the declared charset, falling back to UTF-8."""
        encoding = self.charset or "utf-8"
        try:
            return self.body.decode(encoding, errors="replace")
        except LookupError:
            return self.body.decode("utf-8", errors="replace")


def normalize_http_date(date_value: Optional[str]) -> Optional[str]:
    """Normalize HTTP date strings to RFC 7231 format (GMT)."""
    if not date_value:
        return None
    try:
        dt = parsedate_to_datetime(date_value)
        if not dt:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        dt = dt.astimezone(timezone.utc)
        return format_datetime(dt, usegmt=True)
    except (TypeError, ValueError, OverflowError) as exc:
        logger.debug(f"Unable to normalize HTTP date '{date_value}': {exc}")
        return None


def format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        strerror = getattr(os_error, 'strerror', None)
        if errno is not None:
            parts.append(f"errno={errno}")
        if strerror:
            parts.append(str(strerror))
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


class FeedFetcher:
    """Shared aiohttp client used by refresh, discovery and favicon lookups."""

    def __init__(self, timeout: Optional[float] = None, max_redirects: Optional[int] = None,
                 max_bytes: Optional[int] = None, user_agent: Optional[str] = None) -> None:
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT
        self.max_redirects = max_redirects if max_redirects is not None else config.MAX_REDIRECTS
        self.max_bytes = max_bytes if max_bytes is not None else config.MAX_RESPONSE_BYTES
        self.user_agent = user_agent or config.USER_AGENT
        self.session: Optional[ClientSession] = None

    async def initialize(self) -> None:
        if self.session is None or self.session.closed:
            self.session = ClientSession()

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None

    def _prepare_request_headers(self, etag: Optional[str], last_modified: Optional[str]) -> Dict[str, str]:
        """Build request headers, adding conditional headers for known validators."""
        headers = {'User-Agent': self.user_agent}

        if etag:
            # Handle unquoted ETags gracefully; weak ETags pass through as-is
            if not (etag.startswith('"') or etag.startswith('W/"')):
                etag = f'"{etag}"'
            headers['If-None-Match'] = etag

        if last_modified:
            normalized_last_modified = normalize_http_date(last_modified)
            if normalized_last_modified:
                headers['If-Modified-Since'] = normalized_last_modified
            else:
                logger.warning(f"Invalid Last-Modified value, not sending header: {last_modified}")

        return headers

    @trace_span(
        "fetch",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, *args, **kwargs: {"http.url": url},
    )
    async def fetch(self, url: str, etag: Optional[str] = None, last_modified: Optional[str] = None,
                    timeout: Optional[float] = None) -> FetchResult:
        """Fetch ``url`` once.

        Raises:
            FetchTimeout, HTTPStatusError, NetworkError, TooManyRedirects,
            ResponseTooLarge
        """
        await self.initialize()
        headers = self._prepare_request_headers(etag, last_modified)
        client_timeout = ClientTimeout(total=timeout if timeout is not None else self.timeout)

        try:
            async with self.session.get(
                url,
                headers=headers,
                timeout=client_timeout,
                max_redirects=self.max_redirects,
            ) as response:
                final_url = str(response.url)

                if response.status == HTTP_NOT_MODIFIED:
                    logger.debug(f"{url} not modified since last fetch")
                    return FetchResult(
                        url=final_url,
                        status=response.status,
                        etag=etag,
                        last_modified=last_modified,
                        not_modified=True,
                    )

                if not HTTP_OK <= response.status < HTTP_MULTIPLE_CHOICES:
                    raise HTTPStatusError(url, response.status)

                declared = response.content_length
                if declared is not None and declared > self.max_bytes:
                    raise ResponseTooLarge(url, f"{declared} bytes")

                chunks: List[bytes] = []
                received = 0
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    received += len(chunk)
                    if received > self.max_bytes:
                        raise ResponseTooLarge(url, f"over {self.max_bytes} bytes")
                    chunks.append(chunk)

                return FetchResult(
                    url=final_url,
                    status=response.status,
                    body=b"".join(chunks),
                    content_type=response.content_type or "",
                    charset=response.charset,
                    etag=response.headers.get('ETag'),
                    last_modified=normalize_http_date(response.headers.get('Last-Modified')),
                )

        except TimeoutError as e:
            # aiohttp timeouts are both TimeoutError and ClientError, so this goes first
            logger.debug(f"Timeout fetching {url}: {e}")
            raise FetchTimeout(url) from e
        except AiohttpTooManyRedirects as e:
            raise TooManyRedirects(url, f"more than {self.max_redirects} hops") from e
        except ClientError as e:
            detail = format_client_error(e)
            logger.debug(f"Error fetching {url}: {detail}")
            raise NetworkError(url, detail) from e
        except (OSError, ValueError) as e:
            # Invalid URLs and low-level socket failures outside aiohttp's hierarchy
            raise NetworkError(url, str(e)) from e

    async def get_body(self, url: str, timeout: Optional[float] = None) -> str:
        """Fetch a page and return its decoded text."""
        result = await self.fetch(url, timeout=timeout)
        return result.text()
