#!/usr/bin/env python3
"""
Utility functions for the feed aggregator.

Small helpers shared by the fetcher, discovery, favicon and storage layers:
URL validation and resolution, image sniffing, and text helpers.
"""

from typing import Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup


# Magic-number prefixes for the image formats browsers accept as favicons
_IMAGE_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x00\x00\x01\x00", "image/x-icon"),
    (b"\x00\x00\x02\x00", "image/x-icon"),
    (b"BM", "image/bmp"),
)


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    parsed = urlparse(url)
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def absolute_url(href: Optional[str], base_url: Optional[str]) -> Optional[str]:
    """Resolve ``href`` against ``base_url``; None when the result is not http(s)."""
    if not href:
        return None
    href = href.strip()
    if href.startswith(('http://', 'https://')):
        return href
    if href.startswith('//'):
        scheme = urlparse(base_url).scheme if base_url else ''
        return f"{scheme or 'https'}:{href}"
    if not base_url:
        return None
    resolved = urljoin(base_url, href)
    return resolved if validate_url(resolved) else None


def sniff_image_type(data: Optional[bytes]) -> Optional[str]:
    """Return the image MIME type detected from the leading bytes, if any."""
    if not data:
        return None
    for signature, mime in _IMAGE_SIGNATURES:
        if data.startswith(signature):
            return mime
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    head = data[:256].lstrip().lower()
    if head.startswith(b"<svg") or (head.startswith(b"<?xml") and b"<svg" in data[:1024].lower()):
        return "image/svg+xml"
    return None


def html_to_text(html_content: Optional[str]) -> str:
    """Flatten an HTML fragment to whitespace-normalized text."""
    if not html_content:
        return ""
    text = BeautifulSoup(html_content, 'html.parser').get_text(" ")
    return " ".join(text.split())


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating

    Returns:
        The original text or truncated version with suffix
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix
