import asyncio
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import pytest

from conftest import FakeFetcher, InlineRegexSandbox
from feed_aggregator.models.content import (
    Channel,
    FeedRunSummary,
    IngestResult,
    NormalizedItem,
    ScrapedArticle,
    ScrapingConfig,
)
from feed_aggregator.pipeline.channel_orchestrator import ChannelOrchestrator
from feed_aggregator.pipeline.feed_ingestor import FeedIngestor
from feed_aggregator.services.parser_service import ParserService
from feed_aggregator.services.repository import (
    FEED_CHANNELS_ENTITY,
    FEED_RAW_ENTITY,
    InMemoryRepository,
)
from feed_aggregator.services.rss import RSSService
from feed_aggregator.utils.error_monitoring import ErrorMonitor
from feed_aggregator.utils.errors import ChannelNotFoundError, FeedAggregatorError, FetchError


ALPHA_FEED = "https://alpha.com/feed"
BETA_FEED = "https://beta.com/feed"


def rss_feed(links, pub_date=None) -> str:
    published = format_datetime(pub_date or datetime.now(timezone.utc) - timedelta(hours=1), usegmt=True)
    items = "".join(
        f"<item><title>Story {i}</title><link>{link}</link>"
        f"<pubDate>{published}</pubDate><description>Teaser {i}</description></item>"
        for i, link in enumerate(links)
    )
    return f'<?xml version="1.0"?><rss version="2.0"><channel><title>Feed</title>{items}</channel></rss>'


def channel_record(channel_id, name, rss='', **overrides):
    record = {
        'id': channel_id,
        'name': name,
        'url': f"https://{name.lower()}.com",
        'rss': rss,
        'active': True,
        'interval_update': 3600,
        'last_update': None,
    }
    record.update(overrides)
    return record


class NoWaitLimiter:
    def __init__(self, interval, name="default"):
        self.interval = interval

    async def acquire(self) -> None:
        return None


class SlowRSSService(RSSService):
    def __init__(self, fetcher, slow_urls):
        super().__init__(fetcher)
        self.slow_urls = set(slow_urls)

    async def fetch_feed(self, url):
        if url in self.slow_urls:
            await asyncio.sleep(5)
        return await super().fetch_feed(url)


class FakeScraper:
    def __init__(self, articles):
        self.articles = articles
        self.requests = []

    async def scrape_list(self, url, config=None):
        self.requests.append((url, config))
        return list(self.articles)


@pytest.fixture(autouse=True)
def no_pacing(monkeypatch):
    monkeypatch.setattr("feed_aggregator.pipeline.channel_orchestrator.RateLimiter", NoWaitLimiter)


def make_orchestrator(channels, pages=None, rss_service=None, scraper=None, **kwargs):
    repository = InMemoryRepository({FEED_CHANNELS_ENTITY: channels})
    fetcher = FakeFetcher(pages or {})
    parser_service = ParserService(repository, sandbox=InlineRegexSandbox(), fetcher=fetcher)
    monitor = ErrorMonitor()
    ingestor = FeedIngestor(repository, parser_service, fetcher=fetcher, error_monitor=monitor)
    orchestrator = ChannelOrchestrator(
        repository,
        ingestor,
        rss_service=rss_service or RSSService(fetcher),
        scraper=scraper,
        error_monitor=monitor,
        **kwargs,
    )
    return orchestrator, repository, monitor


def stored_channel(repository, channel_id):
    return asyncio.run(repository.find_one(FEED_CHANNELS_ENTITY, {'id': channel_id}))


class TestProcessFeeds:
    def test_only_due_channels_processed(self) -> None:
        recently = datetime.now(timezone.utc) - timedelta(minutes=5)
        orchestrator, repository, _ = make_orchestrator(
            [
                channel_record('c1', 'Alpha', rss=ALPHA_FEED),
                channel_record('c2', 'Beta', rss=BETA_FEED, last_update=recently),
            ],
            pages={ALPHA_FEED: rss_feed(["https://alpha.com/a", "https://alpha.com/b"])},
        )

        summary = asyncio.run(orchestrator.process_feeds())

        assert summary.success is True
        assert summary.processed == 1
        assert summary.skipped == 1
        assert summary.results[0].channel_name == 'Alpha'
        assert summary.results[0].candidates == 2
        assert summary.results[0].added == 2
        assert repository.count(FEED_RAW_ENTITY) == 2
        assert stored_channel(repository, 'c1')['last_update'] is not None
        assert stored_channel(repository, 'c2')['last_update'] == recently

    def test_force_ignores_schedule(self) -> None:
        recently = datetime.now(timezone.utc) - timedelta(minutes=5)
        orchestrator, _, _ = make_orchestrator(
            [
                channel_record('c1', 'Alpha', rss=ALPHA_FEED),
                channel_record('c2', 'Beta', rss=BETA_FEED, last_update=recently),
            ],
            pages={ALPHA_FEED: rss_feed([]), BETA_FEED: rss_feed(["https://beta.com/x"])},
        )
        summary = asyncio.run(orchestrator.process_feeds(force=True))
        assert summary.processed == 2
        assert summary.skipped == 0

    def test_failing_channel_recorded_and_batch_continues(self) -> None:
        orchestrator, repository, monitor = make_orchestrator(
            [
                channel_record('c1', 'Alpha', rss=ALPHA_FEED),
                channel_record('c2', 'Beta', rss=BETA_FEED),
            ],
            pages={ALPHA_FEED: rss_feed(["https://alpha.com/a"])},
        )

        summary = asyncio.run(orchestrator.process_feeds())

        assert summary.success is True
        assert summary.failed == [{'channel': 'Beta', 'error': f"HTTP 404 for {BETA_FEED}"}]
        assert summary.message == "Processed 2 channels (1 successful, 1 failed)"
        # a failed channel still waits for its next interval
        assert stored_channel(repository, 'c2')['last_update'] is not None
        assert monitor.recent(service='channel_orchestrator')[0].subject == 'Beta'

    def test_rss_items_capped(self) -> None:
        links = [f"https://alpha.com/{i}" for i in range(12)]
        orchestrator, repository, _ = make_orchestrator(
            [channel_record('c1', 'Alpha', rss=ALPHA_FEED)],
            pages={ALPHA_FEED: rss_feed(links)},
        )
        summary = asyncio.run(orchestrator.process_feeds())
        assert summary.results[0].candidates == 10
        assert repository.count(FEED_RAW_ENTITY) == 10

    def test_global_timeout_keeps_partial_results(self) -> None:
        fetcher_pages = {ALPHA_FEED: rss_feed(["https://alpha.com/a"]), BETA_FEED: rss_feed([])}
        orchestrator, repository, _ = make_orchestrator(
            [
                channel_record('c1', 'Alpha', rss=ALPHA_FEED),
                channel_record('c2', 'Beta', rss=BETA_FEED),
            ],
            pages=fetcher_pages,
            rss_service=SlowRSSService(FakeFetcher(fetcher_pages), [BETA_FEED]),
            global_timeout=0.5,
            admission_margin=0,
        )

        summary = asyncio.run(orchestrator.process_feeds())

        assert summary.success is False
        assert summary.message.startswith("Global timeout reached for feed processing")
        assert summary.processed == 2
        assert summary.results[0].channel_name == 'Alpha'
        assert summary.results[0].success is True
        assert repository.count(FEED_RAW_ENTITY) == 1

    def test_global_timeout_records_interrupted_channel(self) -> None:
        fetcher_pages = {ALPHA_FEED: rss_feed([]), BETA_FEED: rss_feed([])}
        orchestrator, repository, _ = make_orchestrator(
            [
                channel_record('c1', 'Alpha', rss=ALPHA_FEED),
                channel_record('c2', 'Beta', rss=BETA_FEED),
            ],
            pages=fetcher_pages,
            rss_service=SlowRSSService(FakeFetcher(fetcher_pages), [BETA_FEED]),
            global_timeout=0.5,
            admission_margin=0,
        )

        summary = asyncio.run(orchestrator.process_feeds())

        assert summary.failed == [{'channel': 'Beta', 'error': "Global timeout reached"}]
        assert summary.message == (
            "Global timeout reached for feed processing. Processed 2 channels (1 successful, 1 failed)"
        )
        assert stored_channel(repository, 'c2')['last_update'] is not None

    def test_repeated_failures_surface_as_patterns(self) -> None:
        orchestrator, _, _ = make_orchestrator(
            [channel_record('c2', 'Beta', rss=BETA_FEED)],
            pages={},
        )

        first = asyncio.run(orchestrator.process_feeds(force=True))
        asyncio.run(orchestrator.process_feeds(force=True))
        third = asyncio.run(orchestrator.process_feeds(force=True))

        assert first.error_patterns == []
        assert third.error_patterns == ["Repeated pattern: FetchError for Beta occurred 3 times recently"]

    def test_channel_timeout_fails_only_that_channel(self) -> None:
        pages = {ALPHA_FEED: rss_feed([]), BETA_FEED: rss_feed([])}
        orchestrator, _, _ = make_orchestrator(
            [
                channel_record('c1', 'Beta', rss=BETA_FEED),
                channel_record('c2', 'Alpha', rss=ALPHA_FEED),
            ],
            pages=pages,
            rss_service=SlowRSSService(FakeFetcher(pages), [BETA_FEED]),
            channel_timeout=0.2,
        )

        summary = asyncio.run(orchestrator.process_feeds())

        assert summary.success is True
        assert summary.failed == [{'channel': 'Beta', 'error': "Timeout processing channel Beta"}]
        assert summary.results[1].success is True

    def test_admission_margin_stops_new_channels(self) -> None:
        orchestrator, _, _ = make_orchestrator(
            [channel_record('c1', 'Alpha', rss=ALPHA_FEED)],
            pages={ALPHA_FEED: rss_feed([])},
            global_timeout=5,
            admission_margin=10,
        )
        summary = asyncio.run(orchestrator.process_feeds())
        assert summary.processed == 0
        assert summary.message == "Processed 0 channels (0 successful, 0 failed)"

    def test_no_active_channels(self) -> None:
        orchestrator, _, _ = make_orchestrator([channel_record('c1', 'Alpha', rss=ALPHA_FEED, active=False)])
        summary = asyncio.run(orchestrator.process_feeds())
        assert summary.success is True
        assert summary.message == "No channels found to process."


class TestProcessFeed:
    def test_unknown_channel(self) -> None:
        orchestrator, _, _ = make_orchestrator([])
        with pytest.raises(ChannelNotFoundError):
            asyncio.run(orchestrator.process_feed('missing'))

    def test_failure_raises_and_touches_last_update(self) -> None:
        orchestrator, repository, _ = make_orchestrator([channel_record('c1', 'Alpha', rss=ALPHA_FEED)])
        with pytest.raises(FetchError):
            asyncio.run(orchestrator.process_feed('c1'))
        assert stored_channel(repository, 'c1')['last_update'] is not None

    def test_runs_regardless_of_schedule(self) -> None:
        orchestrator, repository, _ = make_orchestrator(
            [channel_record('c1', 'Alpha', rss=ALPHA_FEED, last_update=datetime.now(timezone.utc))],
            pages={ALPHA_FEED: rss_feed(["https://alpha.com/a"])},
        )
        result = asyncio.run(orchestrator.process_feed('c1'))
        assert result.success is True
        assert result.added == 1

    def test_rss_channel_without_url(self) -> None:
        orchestrator, _, _ = make_orchestrator([channel_record('c1', 'Alpha')])
        with pytest.raises(FeedAggregatorError, match="no RSS URL"):
            asyncio.run(orchestrator.process_feed('c1'))


class TestScrapingChannels:
    def _channel(self, **overrides):
        fields = {
            'source_type': 'WEB_SCRAPING',
            'list_page_url': "https://listing.com/news",
        }
        fields.update(overrides)
        return channel_record('c1', 'Listing', **fields)

    def test_dates_fall_back_to_url_then_now(self) -> None:
        now = datetime.now(timezone.utc)
        scraper = FakeScraper([
            ScrapedArticle(title='Dated', link="https://listing.com/news/dated", image="https://cdn/x.jpg", date=now),
            ScrapedArticle(title='Old', link="https://listing.com/2020/01/02/old", image="https://cdn/y.jpg"),
            ScrapedArticle(title='Undated', link="https://listing.com/news/undated", image="https://cdn/z.jpg"),
        ])
        orchestrator, repository, _ = make_orchestrator([self._channel()], scraper=scraper)

        result = asyncio.run(orchestrator.process_feed('c1'))

        assert result.candidates == 3
        assert result.added == 2
        stored = asyncio.run(repository.find_all(FEED_RAW_ENTITY))
        assert {r['link'] for r in stored} == {
            "https://listing.com/news/dated",
            "https://listing.com/news/undated",
        }
        assert all(r['feed_type'] == 'WEB_SCRAPING' for r in stored)

    def test_invalid_config_uses_defaults(self) -> None:
        scraper = FakeScraper([])
        orchestrator, _, _ = make_orchestrator([self._channel(scraping_config="{not json")], scraper=scraper)

        result = asyncio.run(orchestrator.process_feed('c1'))

        assert result.candidates == 0
        assert scraper.requests == [("https://listing.com/news", ScrapingConfig.default())]

    def test_configured_selectors_used(self) -> None:
        scraper = FakeScraper([])
        config = {'articleSelector': '.card', 'titleSelector': 'h3'}
        orchestrator, _, _ = make_orchestrator([self._channel(scraping_config=config)], scraper=scraper)
        asyncio.run(orchestrator.process_feed('c1'))
        used = scraper.requests[0][1]
        assert used.article_selector == '.card'
        assert used.title_selector == 'h3'

    def test_missing_list_page_url(self) -> None:
        orchestrator, _, _ = make_orchestrator(
            [self._channel(list_page_url=None)], scraper=FakeScraper([])
        )
        with pytest.raises(FeedAggregatorError, match="list_page_url"):
            asyncio.run(orchestrator.process_feed('c1'))


class SlowIngestor:
    async def ingest(self, item, feed_type, channel_id):
        await asyncio.sleep(5)
        return IngestResult(added=True)


class BrokenIngestor:
    async def ingest(self, item, feed_type, channel_id):
        raise RuntimeError("database is locked")


class TestItemIsolation:
    def test_item_timeout(self) -> None:
        orchestrator = ChannelOrchestrator(InMemoryRepository(), SlowIngestor())
        channel = Channel(id='c1', name='Alpha')
        result = asyncio.run(
            orchestrator._ingest_one(NormalizedItem(link="https://a.com/1"), 'RSS', channel, 0.05)
        )
        assert result.added is False
        assert result.reason == "Item processing timeout"

    def test_item_error_recorded(self) -> None:
        monitor = ErrorMonitor()
        orchestrator = ChannelOrchestrator(InMemoryRepository(), BrokenIngestor(), error_monitor=monitor)
        channel = Channel(id='c1', name='Alpha')
        result = asyncio.run(
            orchestrator._ingest_one(NormalizedItem(link="https://a.com/1"), 'RSS', channel, 1.0)
        )
        assert result.reason == "database is locked"
        assert monitor.recent()[0].subject == "https://a.com/1"


class TestRunForever:
    def test_stops_on_shutdown_event(self) -> None:
        orchestrator, _, _ = make_orchestrator([])
        runs = []

        async def scenario():
            shutdown = asyncio.Event()

            async def fake_process_feeds(force=False):
                runs.append(force)
                if len(runs) == 2:
                    shutdown.set()
                return FeedRunSummary(success=True, message="ok")

            orchestrator.process_feeds = fake_process_feeds
            await orchestrator.run_forever(interval=0.01, shutdown_event=shutdown)

        asyncio.run(scenario())
        assert len(runs) == 2
