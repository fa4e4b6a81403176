"""
Bounded HTTP GET used for feeds, listing pages, article pages and meta probes.
"""

import asyncio
import logging
import re
from typing import Dict, Optional

import aiohttp

from feed_aggregator.utils.errors import FetchError


DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "pt-BR,pt;q=0.9,en-US;q=0.8,en;q=0.7",
}

CHARSET_RE = re.compile(r'charset=([^;]+)', re.I)

LATIN1_CHARSETS = {'iso-8859-1', 'iso8859-1', 'latin1', 'latin-1', 'windows-1252', 'cp1252'}

# Hard ceiling on reading a body once headers have arrived
BODY_READ_TIMEOUT = 30.0

CHUNK_SIZE = 8192


class HtmlFetcher:
    """
    Fetches a URL and returns its decoded body.

    Headers must arrive within `timeout`; reading the body is bounded
    separately by BODY_READ_TIMEOUT. `max_bytes` truncates the body and
    `stop_marker` ends the read early once seen (e.g. "</head>" for meta
    probes).
    """

    def __init__(self, default_headers: Optional[Dict[str, str]] = None):
        self.default_headers = dict(default_headers or DEFAULT_HEADERS)
        self.logger = logging.getLogger(__name__)

    async def fetch(
        self,
        url: str,
        timeout: float = 15.0,
        headers: Optional[Dict[str, str]] = None,
        max_bytes: Optional[int] = None,
        stop_marker: Optional[str] = None,
    ) -> str:
        request_headers = {**self.default_headers, **(headers or {})}
        self.logger.debug(f"Fetching {url} (timeout={timeout}s, max_bytes={max_bytes})")

        try:
            async with aiohttp.ClientSession() as session:
                response = await asyncio.wait_for(
                    session.get(url, headers=request_headers, allow_redirects=True),
                    timeout=timeout,
                )
                try:
                    if not 200 <= response.status < 300:
                        raise FetchError(f"HTTP {response.status} for {url}", url=url, status=response.status)

                    content_type = response.headers.get('Content-Type', '')
                    raw = await asyncio.wait_for(
                        self._read_body(response, max_bytes, stop_marker),
                        timeout=BODY_READ_TIMEOUT,
                    )
                finally:
                    response.release()
        except asyncio.TimeoutError as e:
            raise FetchError(f"Timed out fetching {url}", url=url) from e
        except aiohttp.ClientError as e:
            raise FetchError(f"Transport error fetching {url}: {e}", url=url) from e
        except ValueError as e:
            # aiohttp rejects malformed URLs with ValueError subclasses
            raise FetchError(f"Invalid URL {url}: {e}", url=url) from e

        if not raw:
            raise FetchError(f"Empty body received from {url}", url=url)

        text = self.decode(raw, content_type)
        if not text:
            raise FetchError(f"Could not decode body from {url}", url=url)

        self.logger.debug(f"Read {len(raw)} bytes from {url}")
        return text

    async def _read_body(
        self,
        response: aiohttp.ClientResponse,
        max_bytes: Optional[int],
        stop_marker: Optional[str],
    ) -> bytes:
        buffer = bytearray()
        marker = stop_marker.lower().encode('ascii') if stop_marker else None

        async for chunk in response.content.iter_chunked(CHUNK_SIZE):
            search_from = max(0, len(buffer) - len(marker)) if marker else 0
            buffer.extend(chunk)

            if max_bytes is not None and len(buffer) >= max_bytes:
                del buffer[max_bytes:]
                break

            if marker and marker in bytes(buffer[search_from:]).lower():
                break

        return bytes(buffer)

    @staticmethod
    def charset_from(content_type: str) -> str:
        match = CHARSET_RE.search(content_type or '')
        if not match:
            return 'utf-8'
        return match.group(1).strip().strip('"\'').lower()

    @classmethod
    def decode(cls, raw: bytes, content_type: str = '') -> str:
        """
        Decode with the declared charset. Latin-1 family charsets that fail
        fall back to ISO-8859-1; everything else falls back to UTF-8 with
        replacement characters.
        """
        charset = cls.charset_from(content_type)
        try:
            return raw.decode(charset)
        except (LookupError, UnicodeDecodeError):
            if charset in LATIN1_CHARSETS:
                return raw.decode('iso-8859-1')
            return raw.decode('utf-8', errors='replace')
