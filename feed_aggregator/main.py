#!/usr/bin/env python3
import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from feed_aggregator.config import AggregatorConfig, load_prompts
from feed_aggregator.models.content import ParserDefinition
from feed_aggregator.pipeline.channel_orchestrator import ChannelOrchestrator
from feed_aggregator.pipeline.feed_ingestor import FeedIngestor
from feed_aggregator.services.ai_service import GeminiBackend
from feed_aggregator.services.feed_ai_content import FeedAIContentService
from feed_aggregator.services.html_fetcher import HtmlFetcher
from feed_aggregator.services.parser_service import ParserService
from feed_aggregator.services.regex_sandbox import RegexSandbox
from feed_aggregator.services.repository import (
    FEED_CHANNELS_ENTITY,
    FEED_PARSER_ENTITY,
    Repository,
)
from feed_aggregator.services.rss import RSSService
from feed_aggregator.services.sqlite_repository import SqliteRepository
from feed_aggregator.services.web_scraper import WebScraperService
from feed_aggregator.utils.error_monitoring import ErrorMonitor
from feed_aggregator.utils.errors import FeedAggregatorError
from feed_aggregator.utils.logging_config import setup_logging


SEED_ENTITIES = {
    'channels': FEED_CHANNELS_ENTITY,
    'parsers': FEED_PARSER_ENTITY,
}


class FeedAggregatorApp:
    """
    Wires the aggregation services together for the command line.
    """

    def __init__(self, config: AggregatorConfig, repository: Optional[Repository] = None):
        self.config = config
        self.repository = repository or SqliteRepository(config.database_path)
        self.logger = logging.getLogger(__name__)

        ai_backend = None
        if config.gemini_api_key:
            ai_backend = GeminiBackend(
                api_key=config.gemini_api_key,
                model=config.gemini_model,
                timeout=config.ai_timeout,
            )
        else:
            self.logger.warning("GEMINI_API_KEY not set, AI-assisted parsing disabled")

        fetcher = HtmlFetcher()
        error_monitor = ErrorMonitor()

        self.parser_service = ParserService(
            self.repository,
            sandbox=RegexSandbox(),
            fetcher=fetcher,
            ai_backend=ai_backend,
            prompts=load_prompts(config.prompts_path),
            ai_fallback=config.parser_ai_fallback,
        )
        self.ingestor = FeedIngestor(
            self.repository,
            self.parser_service,
            fetcher=fetcher,
            recency_days=config.recency_days,
            direct_extraction_prefixes=config.direct_extraction_prefixes,
            error_monitor=error_monitor,
        )
        self.orchestrator = ChannelOrchestrator(
            self.repository,
            self.ingestor,
            rss_service=RSSService(fetcher),
            scraper=WebScraperService(fetcher),
            error_monitor=error_monitor,
            global_timeout=config.global_timeout,
            channel_timeout=config.channel_timeout,
        )
        self.ai_content = FeedAIContentService(self.repository)

        self.shutdown_event = asyncio.Event()

    async def initialize(self) -> None:
        if isinstance(self.repository, SqliteRepository):
            Path(self.config.database_path).parent.mkdir(parents=True, exist_ok=True)
            await self.repository.initialize_db()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.shutdown_event.set)
            except NotImplementedError:
                # Windows event loops do not support signal handlers
                signal.signal(sig, lambda signum, frame: self.shutdown_event.set())

    async def load_seed(self, path: str) -> Dict[str, int]:
        """Insert channels and parsers from a YAML file, skipping ids already stored."""
        with open(path, "r", encoding="utf-8") as f:
            seed = yaml.safe_load(f) or {}

        counts: Dict[str, int] = {}
        for key, entity in SEED_ENTITIES.items():
            inserted = 0
            for record in seed.get(key) or []:
                if entity == FEED_CHANNELS_ENTITY:
                    record = {'active': True, **record}
                else:
                    # channel ids are stored as strings
                    parser = ParserDefinition.from_record(record)
                    self.parser_service.validate_parser(parser)
                    record = parser.to_record()
                if record.get('id') is not None:
                    existing = await self.repository.find_one(entity, {'id': str(record['id'])})
                    if existing:
                        continue
                await self.repository.insert(entity, record)
                inserted += 1
            counts[key] = inserted

        self.logger.info(f"Seeded {counts.get('channels', 0)} channels and {counts.get('parsers', 0)} parsers from {path}")
        return counts

    async def schedule(self) -> None:
        self.install_signal_handlers()
        await self.orchestrator.run_forever(
            interval=self.config.schedule_interval,
            shutdown_event=self.shutdown_event,
        )


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def main(argv: Optional[list] = None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(description="News feed aggregator")
    parser.add_argument('--once', action='store_true', help='Process all due channels once and exit')
    parser.add_argument('--force', action='store_true', help='Process channels even if they are not due')
    parser.add_argument('--channel', metavar='ID', help='Process a single channel now')
    parser.add_argument('--parse', metavar='URL', help='Parse an article URL and print the result')
    parser.add_argument('--parser-id', metavar='ID', help='Parser to use with --parse')
    parser.add_argument('--analyze-parsers', action='store_true', help='Report parsers with invalid patterns')
    parser.add_argument('--seed', metavar='FILE', help='Load channels and parsers from a YAML file')
    parser.add_argument('--pending-ai-content', action='store_true',
                        help='List AI content records not yet linked to a post')
    args = parser.parse_args(argv)

    config = AggregatorConfig.from_env()
    setup_logging(log_level=config.log_level, log_dir=config.log_dir)
    logger = logging.getLogger(__name__)

    app = FeedAggregatorApp(config)
    await app.initialize()

    try:
        if args.seed:
            counts = await app.load_seed(args.seed)
            print(f"✅ Seeded {counts['channels']} channels, {counts['parsers']} parsers")

        if args.parse:
            outcome = await app.parser_service.parse_content(args.parser_id, args.parse)
            _print_json({
                'success': outcome.success,
                'message': outcome.message,
                'data': outcome.data.to_dict() if outcome.data else None,
            })
        elif args.pending_ai_content:
            _print_json(await app.ai_content.list({'post_ref': 'null'}))
        elif args.analyze_parsers:
            _print_json(await app.parser_service.analyze_all_parsers())
        elif args.channel:
            result = await app.orchestrator.process_feed(args.channel)
            print(f"✅ {result.channel_name}: {result.added} new items of {result.candidates} candidates")
        elif args.once or args.force:
            summary = await app.orchestrator.process_feeds(force=args.force)
            print(("✅ " if summary.success else "❌ ") + summary.message)
            for failure in summary.failed:
                print(f"  {failure['channel']}: {failure['error']}")
            if not summary.success:
                return 1
        elif not args.seed:
            print(f"Starting scheduler (every {config.schedule_interval:.0f}s)...")
            await app.schedule()
    except FeedAggregatorError as e:
        print(f"❌ {e}")
        logger.error(f"Command failed: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n⚠️ Shutting down gracefully...")

    return 0


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
