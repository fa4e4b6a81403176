"""
Content models for the feed aggregator.

Records are persisted as plain dicts with snake_case keys; these dataclasses
convert to and from that shape at the repository boundary.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)


class SourceType(Enum):
    RSS = "RSS"
    WEB_SCRAPING = "WEB_SCRAPING"


FEED_STATUS_PENDING = "pending"

# Parser field keys as stored in definitions and exchanged with the AI backend
FIELD_NAMES = ('title', 'content', 'category', 'featureImage', 'tags')

FIELD_ATTRIBUTES = {
    'title': 'title',
    'content': 'content',
    'category': 'category',
    'featureImage': 'feature_image',
    'tags': 'tags',
}

FIELD_WEIGHTS = {
    'title': 25,
    'content': 25,
    'category': 20,
    'featureImage': 20,
    'tags': 10,
}
PUB_DATE_WEIGHT = 10


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = date_parser.parse(str(value))
        except (ValueError, OverflowError):
            logger.warning(f"Ignoring unparseable timestamp: {value!r}")
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class ScrapingConfig:
    """Selector set for a WEB_SCRAPING channel's listing page."""

    article_selector: str
    title_selector: str
    link_selector: str
    image_selector: str
    date_selector: Optional[str] = None
    excerpt_selector: Optional[str] = None

    @classmethod
    def default(cls) -> 'ScrapingConfig':
        return cls(
            article_selector='.article-card, .news-item, .post-item, article',
            title_selector='.news-item-header, h3 a, h2 a, .title a',
            link_selector='a.news-item, h3 a, h2 a, .title a',
            image_selector='.news-item-image img, img, .image img',
            date_selector='.news-item-time, .date, .published, time',
            excerpt_selector='.news-item-content, .excerpt, .summary',
        )

    @classmethod
    def from_value(cls, value: Any) -> Optional['ScrapingConfig']:
        """
        Build from a dict or a JSON string, accepting both snake_case and
        camelCase keys. Returns None when the value is missing or malformed.
        """
        if not value:
            return None
        if isinstance(value, ScrapingConfig):
            return value
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return None
        if not isinstance(value, dict):
            return None

        def pick(snake: str, camel: str) -> Optional[str]:
            return value.get(snake) or value.get(camel)

        article = pick('article_selector', 'articleSelector')
        if not article:
            return None
        default = cls.default()
        return cls(
            article_selector=article,
            title_selector=pick('title_selector', 'titleSelector') or default.title_selector,
            link_selector=pick('link_selector', 'linkSelector') or default.link_selector,
            image_selector=pick('image_selector', 'imageSelector') or default.image_selector,
            date_selector=pick('date_selector', 'dateSelector'),
            excerpt_selector=pick('excerpt_selector', 'excerptSelector'),
        )


@dataclass
class Channel:
    """A configured news source."""

    id: str
    name: str
    source_type: SourceType = SourceType.RSS
    url: str = ''
    rss: str = ''
    list_page_url: Optional[str] = None
    active: bool = True
    interval_update: float = 3600.0  # seconds
    last_update: Optional[datetime] = None
    request_link: bool = False
    scraping_config: Optional[ScrapingConfig] = None
    scraping_config_invalid: bool = False

    def is_due(self, now: datetime, force: bool = False) -> bool:
        if force or self.last_update is None:
            return True
        return (now - self.last_update).total_seconds() > self.interval_update

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Channel':
        raw_type = record.get('source_type') or SourceType.RSS.value
        try:
            source_type = SourceType(raw_type)
        except ValueError:
            logger.warning(f"Unknown source type {raw_type!r} for channel {record.get('name')}, treating as RSS")
            source_type = SourceType.RSS

        raw_config = record.get('scraping_config')
        scraping_config = ScrapingConfig.from_value(raw_config)

        return cls(
            id=str(record['id']),
            name=record.get('name') or str(record['id']),
            source_type=source_type,
            url=record.get('url') or '',
            rss=record.get('rss') or '',
            list_page_url=record.get('list_page_url'),
            active=record.get('active', True),
            interval_update=float(record.get('interval_update') or 3600),
            last_update=_parse_datetime(record.get('last_update')),
            request_link=bool(record.get('request_link', False)),
            scraping_config=scraping_config,
            scraping_config_invalid=bool(raw_config) and scraping_config is None,
        )


@dataclass
class NormalizedItem:
    """A candidate article produced by the RSS normalizer or the scraper."""

    link: str
    title: str = ''
    content: str = ''
    feature_image: str = ''
    pub_date: Optional[datetime] = None
    category: str = ''
    tags: List[str] = field(default_factory=list)

    def __hash__(self):
        return hash(self.link)

    def __eq__(self, other):
        if not isinstance(other, NormalizedItem):
            return False
        return self.link == other.link


@dataclass
class ScrapedArticle:
    """An article teaser extracted from a listing page."""

    title: str
    link: str
    image: Optional[str] = None
    date: Optional[datetime] = None
    excerpt: Optional[str] = None

    def to_item(self) -> NormalizedItem:
        return NormalizedItem(
            link=self.link,
            title=self.title,
            content=self.excerpt or '',
            feature_image=self.image or '',
            pub_date=self.date,
        )


@dataclass
class RawFeedRecord:
    """Persisted, normalized article awaiting downstream processing."""

    title: str
    content: str
    feature_image: str
    link: str
    pub_date: datetime
    category: str
    channel: str
    feed_type: str
    has_parser: bool = False
    parsed_by: Optional[str] = None
    status: str = FEED_STATUS_PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_record(self) -> Dict[str, Any]:
        return {
            'title': self.title,
            'content': self.content,
            'feature_image': self.feature_image,
            'link': self.link,
            'pub_date': self.pub_date,
            'category': self.category,
            'channel': self.channel,
            'feed_type': self.feed_type,
            'has_parser': self.has_parser,
            'parsed_by': self.parsed_by,
            'status': self.status,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


@dataclass
class ParserField:
    regex: str
    locked: bool = False
    value: Optional[str] = None
    confidence: Optional[str] = None

    @classmethod
    def from_value(cls, value: Any) -> Optional['ParserField']:
        """Accept either a bare regex string or a {regex, locked, ...} mapping."""
        if value is None:
            return None
        if isinstance(value, ParserField):
            return replace(value)
        if isinstance(value, str):
            return cls(regex=value) if value else None
        if isinstance(value, dict):
            regex = value.get('regex') or ''
            if not regex:
                return None
            return cls(
                regex=regex,
                locked=bool(value.get('locked', False)),
                value=value.get('value'),
                confidence=value.get('confidence'),
            )
        return None

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {'regex': self.regex, 'locked': self.locked}
        if self.value is not None:
            record['value'] = self.value
        if self.confidence is not None:
            record['confidence'] = self.confidence
        return record


@dataclass
class ParserDefinition:
    """Per-channel set of regexes used to extract article fields."""

    id: Optional[str]
    channel: Optional[str]
    fields: Dict[str, ParserField] = field(default_factory=dict)

    def regex_for(self, name: str) -> Optional[str]:
        parser_field = self.fields.get(name)
        return parser_field.regex if parser_field else None

    def is_locked(self, name: str) -> bool:
        parser_field = self.fields.get(name)
        return bool(parser_field and parser_field.locked)

    def unlocked_fields(self) -> List[str]:
        return [name for name in FIELD_NAMES if not self.is_locked(name)]

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'ParserDefinition':
        """
        Fields are read from a nested "fields" mapping when present, otherwise
        from top-level keys named after the fields.
        """
        source = record.get('fields') if isinstance(record.get('fields'), dict) else record
        fields: Dict[str, ParserField] = {}
        for name in FIELD_NAMES:
            parser_field = ParserField.from_value(source.get(name))
            if parser_field:
                fields[name] = parser_field

        parser_id = record.get('id')
        channel = record.get('channel')
        return cls(
            id=str(parser_id) if parser_id is not None else None,
            channel=str(channel) if channel is not None else None,
            fields=fields,
        )

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            'channel': self.channel,
            'fields': {name: f.to_record() for name, f in self.fields.items()},
        }
        if self.id is not None:
            record['id'] = self.id
        return record


@dataclass
class ParseResult:
    """Field values extracted from one page by one parser."""

    link: str
    title: str = ''
    content: str = ''
    category: str = ''
    feature_image: str = ''
    tags: str = ''
    pub_date: Optional[datetime] = None
    confidence: int = 0
    parser_id: Optional[str] = None

    def value_for(self, name: str) -> str:
        return getattr(self, FIELD_ATTRIBUTES[name])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'title': self.title,
            'content': self.content,
            'featureImage': self.feature_image,
            'category': self.category,
            'tags': self.tags,
            'pubDate': self.pub_date.isoformat() if self.pub_date else None,
            'link': self.link,
            'confidence': self.confidence,
            'parserId': self.parser_id,
        }


@dataclass
class BestResult(ParseResult):
    """
    Merge of several ParseResults. Later results override earlier ones field by
    field whenever they carry a value; confidence and parser_id follow the
    last result that contributed anything.
    """

    def merge(self, result: ParseResult) -> None:
        contributed = False
        for name in FIELD_NAMES:
            value = result.value_for(name)
            if value:
                setattr(self, FIELD_ATTRIBUTES[name], value)
                contributed = True
        if result.pub_date:
            self.pub_date = result.pub_date
            contributed = True
        if result.link:
            self.link = result.link
        if contributed:
            self.confidence = result.confidence
            self.parser_id = result.parser_id


@dataclass
class ParseOutcome:
    success: bool
    data: Optional[ParseResult]
    message: str


@dataclass
class IngestResult:
    added: bool
    reason: Optional[str] = None


@dataclass
class ChannelRunResult:
    """Outcome of processing one channel."""

    channel_id: str
    channel_name: str
    success: bool
    added: int = 0
    candidates: int = 0
    error: Optional[str] = None
    duration_ms: float = 0.0


@dataclass
class FeedRunSummary:
    """Outcome of one batch run over all due channels."""

    success: bool
    processed: int = 0
    skipped: int = 0
    failed: List[Dict[str, str]] = field(default_factory=list)
    results: List[ChannelRunResult] = field(default_factory=list)
    message: str = ''
    duration_ms: float = 0.0
    error_patterns: List[str] = field(default_factory=list)
