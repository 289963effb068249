#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.

Background refresh failures (fetch, parse) are recorded against the feed and
never raised to API callers. ``ValidationError`` is the only error that user
facing operations surface synchronously.
"""

from typing import Any, Dict, List, Optional


class FeedError(Exception):
    """Base class for errors recorded against a feed."""


class FetchError(FeedError):
    """A remote request failed.

    Attributes:
        kind: Short machine-readable failure tag (``timeout``, ``http-error:404``...).
        url: The URL being fetched.
    """

    kind = "network-error"

    def __init__(self, url: str, detail: Optional[str] = None):
        self.url = url
        self.detail = detail
        message = self.kind if not detail else f"{self.kind}: {detail}"
        super().__init__(message)


class NetworkError(FetchError):
    """DNS failure, refused connection, reset, TLS error and friends."""

    kind = "network-error"


class FetchTimeout(FetchError):
    kind = "timeout"


class TooManyRedirects(FetchError):
    kind = "too-many-redirects"


class ResponseTooLarge(FetchError):
    kind = "response-too-large"


class HTTPStatusError(FetchError):
    """The server answered with a non-success status code."""

    def __init__(self, url: str, status: int):
        self.status = status
        self.kind = f"http-error:{status}"
        super().__init__(url)


class StructuralParseError(FeedError):
    """The payload could not be read as a feed at all."""


class DiscoveryError(FeedError):
    """No feed could be found at (or linked from) a URL."""


class ValidationError(Exception):
    """Invalid input to a user-facing operation.

    Attributes:
        errors: Optional per-field messages for API responses.
    """

    def __init__(self, message: str, errors: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.errors = errors or {}


class StorageError(Exception):
    """A storage operation failed inside the database worker."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation


__all__: List[str] = [
    "FeedError",
    "FetchError",
    "NetworkError",
    "FetchTimeout",
    "TooManyRedirects",
    "ResponseTooLarge",
    "HTTPStatusError",
    "StructuralParseError",
    "DiscoveryError",
    "ValidationError",
    "StorageError",
]
