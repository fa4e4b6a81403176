"""
Feed item ingestion: validates a candidate article, enriches it (page meta
image, full-content parsing for request_link channels) and stores it as a
pending raw record.
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from feed_aggregator.config import DEFAULT_DIRECT_EXTRACTION_PREFIXES
from feed_aggregator.models.content import Channel, IngestResult, NormalizedItem, RawFeedRecord
from feed_aggregator.services.html_fetcher import HtmlFetcher
from feed_aggregator.services.parser_service import ParserService
from feed_aggregator.services.repository import FEED_CHANNELS_ENTITY, FEED_RAW_ENTITY, Repository
from feed_aggregator.utils.date_extraction import ensure_aware
from feed_aggregator.utils.error_monitoring import ErrorMonitor
from feed_aggregator.utils.errors import FeedAggregatorError
from feed_aggregator.utils.text import html_to_markup
from feed_aggregator.utils.urls import decode_url_entities, resolve_url


META_PROBE_TIMEOUT = 5.0
META_PROBE_MAX_BYTES = 50_000
META_IMAGE_ATTRIBUTES = (
    'property=["\']og:image["\']',
    'name=["\']twitter:image["\']',
    'property=["\']article:image["\']',
    'name=["\']image["\']',
)

PARSE_TIMEOUT = 20.0
DIRECT_FETCH_TIMEOUT = 15.0
DIRECT_FETCH_MAX_BYTES = 5 * 1024 * 1024
MIN_PARSED_CONTENT_LENGTH = 100
MIN_CONTAINER_LENGTH = 200
MIN_DIRECT_CONTENT_LENGTH = 50

ARTICLE_CONTAINER_RES = (
    re.compile(r'<article[^>]*>([\s\S]*?)</article>', re.I),
    re.compile(r'<div[^>]*class=["\'][^"\']*article-content[^"\']*["\'][^>]*>([\s\S]*?)</div>', re.I),
    re.compile(r'<div[^>]*class=["\'][^"\']*post-content[^"\']*["\'][^>]*>([\s\S]*?)</div>', re.I),
    re.compile(r'<div[^>]*class=["\'][^"\']*content[^"\']*["\'][^>]*>([\s\S]*?)</div>', re.I),
)
PARAGRAPHS_AFTER_HEADING_RE = re.compile(
    r'<h1[^>]*>.*?</h1>([\s\S]*?)(?:<h2[^>]*>Leia também|</div>\s*<div[^>]*class=["\'][^"\']*footer|<footer)',
    re.I | re.S,
)


def meta_image_pattern(attribute: str) -> re.Pattern:
    return re.compile(rf'<meta[^>]+{attribute}[^>]+content=["\']([^"\']+)["\']', re.I)


META_IMAGE_RES = tuple(meta_image_pattern(a) for a in META_IMAGE_ATTRIBUTES)


class FeedIngestor:
    """
    Turns one NormalizedItem into a stored RawFeedRecord, or explains why not.

    Rejections (unknown channel, stale, empty link, duplicate) come back as
    IngestResult(added=False, reason=...); enrichment failures are logged
    and never block the insert.
    """

    def __init__(
        self,
        repository: Repository,
        parser_service: ParserService,
        fetcher: Optional[HtmlFetcher] = None,
        recency_days: int = 7,
        direct_extraction_prefixes: Sequence[str] = DEFAULT_DIRECT_EXTRACTION_PREFIXES,
        error_monitor: Optional[ErrorMonitor] = None,
    ):
        self.repository = repository
        self.parser_service = parser_service
        self.fetcher = fetcher or HtmlFetcher()
        self.recency_window = timedelta(days=recency_days)
        self.direct_extraction_prefixes = tuple(direct_extraction_prefixes)
        self.error_monitor = error_monitor or ErrorMonitor()
        self.logger = logging.getLogger(__name__)

    async def ingest(self, item: NormalizedItem, feed_type: str, channel_id: str) -> IngestResult:
        channel_record = await self.repository.find_one(FEED_CHANNELS_ENTITY, {'id': str(channel_id)})
        if not channel_record:
            return IngestResult(added=False, reason="Channel not found")
        channel = Channel.from_record(channel_record)

        now = datetime.now(timezone.utc)
        pub_date = ensure_aware(item.pub_date) if item.pub_date else now
        if pub_date < now - self.recency_window:
            return IngestResult(added=False, reason=f"Item is older than {self.recency_window.days} days")

        link = (item.link or '').strip()
        if not link:
            return IngestResult(added=False, reason="Empty link")

        existing = await self.repository.find_one(FEED_RAW_ENTITY, {'link': link})
        if existing:
            return IngestResult(added=False, reason="Item already exists")

        title = item.title
        content = item.content
        feature_image = decode_url_entities(item.feature_image) if item.feature_image else ''

        if not feature_image:
            feature_image = await self.probe_meta_image(link)

        has_parser = False
        parsed_by = None

        if channel.request_link:
            try:
                outcome = await asyncio.wait_for(
                    self.parser_service.parse_content(None, link), timeout=PARSE_TIMEOUT
                )
                if outcome.success and outcome.data:
                    data = outcome.data
                    title = data.title or title
                    content = data.content or content
                    feature_image = data.feature_image or feature_image
                    has_parser = True
                    parsed_by = data.parser_id
            except asyncio.TimeoutError:
                self.logger.warning(f"Parser timed out after {PARSE_TIMEOUT}s for {link}")
            except FeedAggregatorError as e:
                self.error_monitor.record(e, service='feed_ingestor', operation='parse_content', subject=link)
                self.logger.info(f"Parser failed for {link}, trying direct extraction: {e}")

            if len(content or '') < MIN_PARSED_CONTENT_LENGTH:
                direct = await self.extract_content_directly(link)
                if len(direct) > MIN_DIRECT_CONTENT_LENGTH:
                    content = direct
                    self.logger.info(f"Extracted content directly from {link} ({len(content)} chars)")

        record = RawFeedRecord(
            title=title,
            content=content,
            feature_image=feature_image,
            link=link,
            pub_date=pub_date,
            category=item.category,
            channel=channel.id,
            feed_type=feed_type,
            has_parser=has_parser,
            parsed_by=parsed_by,
        )
        await self.repository.insert(FEED_RAW_ENTITY, record.to_record())
        self.logger.debug(f"Stored {feed_type} item {link} for channel {channel.name}")
        return IngestResult(added=True)

    async def probe_meta_image(self, link: str) -> str:
        """Image from the page's og/twitter/article meta tags, or ''."""
        try:
            head = await self.fetcher.fetch(
                link,
                timeout=META_PROBE_TIMEOUT,
                max_bytes=META_PROBE_MAX_BYTES,
                stop_marker='</head>',
            )
        except FeedAggregatorError as e:
            self.logger.debug(f"Meta image probe failed for {link}: {e}")
            return ''

        for pattern in META_IMAGE_RES:
            match = pattern.search(head)
            if match:
                image = resolve_url(decode_url_entities(match.group(1).strip()), link)
                self.logger.debug(f"Found meta image for {link}: {image}")
                return image
        return ''

    def supports_direct_extraction(self, link: str) -> bool:
        return any(prefix in link for prefix in self.direct_extraction_prefixes)

    async def extract_content_directly(self, link: str) -> str:
        """Article body straight from the page for known sites, as lightweight markup."""
        if not self.supports_direct_extraction(link):
            return ''

        try:
            html = await self.fetcher.fetch(link, timeout=DIRECT_FETCH_TIMEOUT, max_bytes=DIRECT_FETCH_MAX_BYTES)
        except FeedAggregatorError as e:
            self.logger.info(f"Direct content extraction failed for {link}: {e}")
            return ''

        content = ''
        for pattern in ARTICLE_CONTAINER_RES:
            match = pattern.search(html)
            if match and len(match.group(1)) > MIN_CONTAINER_LENGTH:
                content = match.group(1)
                break

        if len(content) < MIN_CONTAINER_LENGTH:
            match = PARAGRAPHS_AFTER_HEADING_RE.search(html)
            if match:
                content = match.group(1)

        markup = html_to_markup(content)
        return markup if len(markup) > MIN_PARSED_CONTENT_LENGTH else ''
