"""
Channel orchestration: decides which channels are due, runs each through
its RSS or scraping branch under time budgets, and reports a run summary.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from feed_aggregator.models.content import (
    Channel,
    ChannelRunResult,
    FeedRunSummary,
    IngestResult,
    NormalizedItem,
    ScrapingConfig,
    SourceType,
)
from feed_aggregator.pipeline.feed_ingestor import FeedIngestor
from feed_aggregator.services.repository import FEED_CHANNELS_ENTITY, Repository
from feed_aggregator.services.rss import RSSService
from feed_aggregator.services.web_scraper import WebScraperService
from feed_aggregator.utils.date_extraction import extract_date_from_url
from feed_aggregator.utils.error_monitoring import ErrorMonitor
from feed_aggregator.utils.errors import ChannelNotFoundError, FeedAggregatorError
from feed_aggregator.utils.logging_config import PerformanceTracker, log_pipeline_metrics
from feed_aggregator.utils.rate_limiter import RateLimiter


MAX_CHANNELS = 1000
ADMISSION_MARGIN = 10.0

RSS_MAX_ITEMS = 10
RSS_ITEM_TIMEOUT = 15.0
RSS_ITEM_INTERVAL = 1.5

SCRAPE_MAX_ITEMS = 20
SCRAPE_ITEM_TIMEOUT = 30.0
SCRAPE_ITEM_INTERVAL = 0.5

CHANNEL_INTERVAL = 1.0


@dataclass
class RunContext:
    """State of one process_feeds run, passed explicitly through the call chain."""

    started_at: float
    deadline: float
    force: bool = False
    results: List[ChannelRunResult] = field(default_factory=list)
    skipped: int = 0

    @classmethod
    def start(cls, budget: float, force: bool = False) -> 'RunContext':
        now = time.monotonic()
        return cls(started_at=now, deadline=now + budget, force=force)

    def remaining(self) -> float:
        return self.deadline - time.monotonic()

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000


class ChannelOrchestrator:
    """
    Runs due channels one after another.

    A failing channel never stops the batch: its error is recorded with the
    channel name and its last_update still advances so it is not retried
    until its next interval.
    """

    def __init__(
        self,
        repository: Repository,
        ingestor: FeedIngestor,
        rss_service: Optional[RSSService] = None,
        scraper: Optional[WebScraperService] = None,
        error_monitor: Optional[ErrorMonitor] = None,
        global_timeout: float = 600.0,
        channel_timeout: float = 120.0,
        admission_margin: float = ADMISSION_MARGIN,
    ):
        self.repository = repository
        self.ingestor = ingestor
        self.rss_service = rss_service or RSSService()
        self.scraper = scraper or WebScraperService()
        self.error_monitor = error_monitor or ErrorMonitor()
        self.global_timeout = global_timeout
        self.channel_timeout = channel_timeout
        self.admission_margin = admission_margin
        self.logger = logging.getLogger(__name__)

    async def process_feed(self, channel_id: str) -> ChannelRunResult:
        """Process one channel immediately, regardless of its schedule."""
        record = await self.repository.find_one(FEED_CHANNELS_ENTITY, {'id': str(channel_id)})
        if not record:
            raise ChannelNotFoundError(f"Channel not found: {channel_id}")

        channel = Channel.from_record(record)
        self.logger.info(f"Manual processing requested for channel '{channel.name}' ({channel.source_type.value})")

        with PerformanceTracker(f"channel {channel.name}", self.logger) as tracker:
            try:
                candidates, added = await self._process_channel(channel)
            finally:
                await self._touch(channel)

        return ChannelRunResult(
            channel_id=channel.id,
            channel_name=channel.name,
            success=True,
            added=added,
            candidates=candidates,
            duration_ms=tracker.duration_ms,
        )

    async def process_feeds(self, force: bool = False) -> FeedRunSummary:
        """Process every active channel that is due. Never raises."""
        try:
            channels = await self.repository.find_all(
                FEED_CHANNELS_ENTITY, {'active': True}, limit=MAX_CHANNELS
            )
        except Exception as e:
            self.logger.error(f"Could not load channels: {e}", exc_info=True)
            return FeedRunSummary(success=False, message=f"Feed processing failed: {e}")

        if not channels:
            return FeedRunSummary(success=True, message="No channels found to process.")

        ctx = RunContext.start(self.global_timeout, force=force)
        self.logger.info(f"🚀 Processing up to {len(channels)} channels (force={force})")

        success = True
        error_message = ''
        try:
            await asyncio.wait_for(self._run_channels(channels, ctx), timeout=self.global_timeout)
        except asyncio.TimeoutError:
            success = False
            error_message = "Global timeout reached for feed processing"
            self.logger.error(f"{error_message} after {ctx.elapsed_ms() / 1000:.1f}s")
        except Exception as e:
            success = False
            error_message = f"Feed processing failed: {e}"
            self.logger.error(error_message, exc_info=True)

        return self._summarize(ctx, success, error_message)

    def _summarize(self, ctx: RunContext, success: bool, error_message: str) -> FeedRunSummary:
        failed = [
            {'channel': r.channel_name, 'error': r.error or ''}
            for r in ctx.results if not r.success
        ]
        succeeded = len(ctx.results) - len(failed)
        message = f"Processed {len(ctx.results)} channels ({succeeded} successful, {len(failed)} failed)"
        if error_message:
            message = f"{error_message}. {message}"

        duration_ms = ctx.elapsed_ms()
        log_pipeline_metrics(
            self.logger,
            "feed_run",
            input_count=len(ctx.results),
            output_count=succeeded,
            duration_ms=duration_ms,
            skipped=ctx.skipped,
            items_added=sum(r.added for r in ctx.results),
        )

        patterns = self.error_monitor.detect_error_patterns()
        if patterns:
            stats = self.error_monitor.get_error_statistics()
            self.logger.warning(f"Error history: {stats['total_errors']} errors {stats['error_types']}")
            for pattern in patterns:
                self.logger.warning(pattern)

        return FeedRunSummary(
            success=success,
            processed=len(ctx.results),
            skipped=ctx.skipped,
            failed=failed,
            results=list(ctx.results),
            message=message,
            duration_ms=duration_ms,
            error_patterns=patterns,
        )

    async def _run_channels(self, channels: List[Dict[str, Any]], ctx: RunContext) -> None:
        pacing = RateLimiter(CHANNEL_INTERVAL, name="channels")

        for record in channels:
            if ctx.remaining() < self.admission_margin:
                self.logger.warning("Run budget nearly spent, not starting further channels")
                break

            channel = Channel.from_record(record)
            if not channel.is_due(datetime.now(timezone.utc), ctx.force):
                ctx.skipped += 1
                continue

            await pacing.acquire()
            await self._run_channel(channel, ctx)

    async def _run_channel(self, channel: Channel, ctx: RunContext) -> ChannelRunResult:
        result = ChannelRunResult(channel_id=channel.id, channel_name=channel.name, success=False)
        ctx.results.append(result)
        started = time.monotonic()

        try:
            result.candidates, result.added = await asyncio.wait_for(
                self._process_channel(channel), timeout=self.channel_timeout
            )
            result.success = True
        except asyncio.TimeoutError as e:
            result.error = f"Timeout processing channel {channel.name}"
            self.error_monitor.record(e, service='channel_orchestrator', operation='process_channel', subject=channel.name)
        except asyncio.CancelledError:
            # Global run budget expired mid-channel
            result.error = "Global timeout reached"
            self.logger.error(f"Channel '{channel.name}' interrupted: {result.error}")
            raise
        except Exception as e:
            result.error = str(e) or type(e).__name__
            self.error_monitor.record(e, service='channel_orchestrator', operation='process_channel', subject=channel.name)
        finally:
            await self._touch(channel)
            result.duration_ms = (time.monotonic() - started) * 1000

        if result.error:
            self.logger.error(f"Channel '{channel.name}' failed: {result.error}")

        log_pipeline_metrics(
            self.logger,
            f"channel:{channel.name}",
            input_count=result.candidates,
            output_count=result.added,
            duration_ms=result.duration_ms,
        )
        return result

    async def _touch(self, channel: Channel) -> None:
        try:
            await self.repository.update(
                FEED_CHANNELS_ENTITY, {'id': channel.id}, {'last_update': datetime.now(timezone.utc)}
            )
        except Exception as e:
            self.logger.error(f"Failed to update last_update for {channel.name}: {e}")

    async def _process_channel(self, channel: Channel) -> Tuple[int, int]:
        if channel.source_type == SourceType.WEB_SCRAPING:
            return await self._process_scraping_channel(channel)
        return await self._process_rss_channel(channel)

    async def _process_rss_channel(self, channel: Channel) -> Tuple[int, int]:
        if not channel.rss:
            raise FeedAggregatorError(f"Channel {channel.name} has no RSS URL")

        self.logger.info(f"Using RSS mode for channel '{channel.name}' ({channel.rss})")
        document = await self.rss_service.fetch_feed(channel.rss)
        feed_type = 'RSS' if document.family == 'rss' else 'Atom'
        items = self.rss_service.to_items(document)[:RSS_MAX_ITEMS]

        added = await self._ingest_all(items, feed_type, channel, RSS_ITEM_TIMEOUT, RSS_ITEM_INTERVAL)
        return len(items), added

    async def _process_scraping_channel(self, channel: Channel) -> Tuple[int, int]:
        if not channel.list_page_url:
            raise FeedAggregatorError("list_page_url is required for WEB_SCRAPING channels")

        if channel.scraping_config_invalid:
            self.logger.error(f"Failed to parse scraping config for {channel.name}, using defaults")
        config = channel.scraping_config or ScrapingConfig.default()

        self.logger.info(f"Scraping {channel.name} from {channel.list_page_url}")
        articles = await self.scraper.scrape_list(channel.list_page_url, config)
        if not articles:
            self.logger.info(f"No articles found for {channel.name}")
            return 0, 0

        items = []
        for article in articles[:SCRAPE_MAX_ITEMS]:
            item = article.to_item()
            if item.pub_date is None:
                item.pub_date = extract_date_from_url(item.link)
            items.append(item)

        added = await self._ingest_all(items, 'WEB_SCRAPING', channel, SCRAPE_ITEM_TIMEOUT, SCRAPE_ITEM_INTERVAL)
        return len(items), added

    async def _ingest_all(
        self,
        items: List[NormalizedItem],
        feed_type: str,
        channel: Channel,
        item_timeout: float,
        interval: float,
    ) -> int:
        pacing = RateLimiter(interval, name=f"items:{channel.name}")
        added = 0

        for position, item in enumerate(items, start=1):
            await pacing.acquire()
            result = await self._ingest_one(item, feed_type, channel, item_timeout)
            if result.added:
                added += 1
            else:
                self.logger.debug(f"Item {position}/{len(items)} of {channel.name} not added: {result.reason}")

        self.logger.info(f"Completed {channel.name}: {added} new items of {len(items)} candidates")
        return added

    async def _ingest_one(
        self,
        item: NormalizedItem,
        feed_type: str,
        channel: Channel,
        item_timeout: float,
    ) -> IngestResult:
        try:
            return await asyncio.wait_for(
                self.ingestor.ingest(item, feed_type, channel.id), timeout=item_timeout
            )
        except asyncio.TimeoutError:
            self.logger.warning(f"Item processing timeout for {item.link} in channel {channel.name}")
            return IngestResult(added=False, reason="Item processing timeout")
        except Exception as e:
            self.error_monitor.record(e, service='feed_ingestor', operation='ingest', subject=item.link)
            self.logger.error(f"Error processing item {item.link}: {e}")
            return IngestResult(added=False, reason=str(e))

    async def run_forever(self, interval: float = 3600.0, shutdown_event: Optional[asyncio.Event] = None) -> None:
        """Run process_feeds every `interval` seconds until shutdown_event is set."""
        shutdown_event = shutdown_event or asyncio.Event()

        while not shutdown_event.is_set():
            summary = await self.process_feeds()
            self.logger.info(summary.message)

            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

        self.logger.info("Scheduler stopped")
