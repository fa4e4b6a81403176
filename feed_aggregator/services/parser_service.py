"""
Content parser engine: applies per-channel regex definitions to article
pages, merges their results, and uses the AI backend to suggest or refine
definitions.
"""

import asyncio
import copy
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

from feed_aggregator.models.content import (
    FIELD_ATTRIBUTES,
    FIELD_NAMES,
    FIELD_WEIGHTS,
    PUB_DATE_WEIGHT,
    BestResult,
    ParseOutcome,
    ParseResult,
    ParserDefinition,
    ParserField,
)
from feed_aggregator.services.ai_service import AIBackend
from feed_aggregator.services.html_fetcher import HtmlFetcher
from feed_aggregator.services.regex_sandbox import RegexSandbox
from feed_aggregator.services.repository import (
    FEED_CHANNELS_ENTITY,
    FEED_PARSER_ENTITY,
    In,
    Like,
    Repository,
)
from feed_aggregator.utils.date_extraction import parse_feed_date
from feed_aggregator.utils.errors import (
    AIGenerationError,
    ContentParseError,
    FeedAggregatorError,
    InvalidPatternError,
    ParseTimeoutError,
    ParserNotFoundError,
)
from feed_aggregator.utils.json_extract import extract_json_object
from feed_aggregator.utils.urls import decode_url_entities, resolve_url, url_host


PUBLISHED_TIME_PATTERN = r'<meta\s+property=["\']article:published_time["\']\s+content=["\']([^"\']+)["\']'

PARSER_TIMEOUT = 6.0
PAGE_FETCH_TIMEOUT = 15.0
PAGE_MAX_BYTES = 5 * 1024 * 1024
MAX_PARSERS_PER_HOST = 5
ANALYZE_PARSERS_LIMIT = 2000
DEFAULT_HTML_MAX_CHARS = 30000

GENERIC_CONFIDENCE = 5
GENERIC_BODY_MAX_CHARS = 5000

GENERIC_TITLE_RE = re.compile(r'<title>(.*?)</title>', re.I | re.S)
GENERIC_IMAGE_RES = (
    re.compile(r'<img[^>]+(?:src|data-src)=["\']([^"\']+)["\']', re.I),
    re.compile(r'<meta[^>]+property=["\']og:image["\'][^>]+content=["\']([^"\']+)["\']', re.I),
    re.compile(r'<meta[^>]+name=["\']twitter:image["\'][^>]+content=["\']([^"\']+)["\']', re.I),
)
GENERIC_ARTICLE_RE = re.compile(r'<article[\s\S]*?</article>', re.I)
GENERIC_BODY_RE = re.compile(r'<body[^>]*>([\s\S]*?)</body>', re.I)

# Block-level tags whose closing slash gets escaped in AI-suggested patterns
BLOCK_TAGS = (
    'div', 'p', 'span', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'a', 'img',
    'ul', 'ol', 'li', 'article', 'section', 'main', 'header', 'footer',
)
CLASS_MATCHER_RE = re.compile(r'<(\w+)\s+class="([^"]+)"')
ID_MATCHER_RE = re.compile(r'<(\w+)\s+id="([^"]+)"')
OPEN_TAG_RE = re.compile(r'<([a-zA-Z0-9]+)(?:[\s>]|\\s)')
ATTRIBUTE_TAG_RE = re.compile(r'<([a-zA-Z0-9]+)\s+[^>]*?([a-zA-Z0-9\-]+)="[^"]*"[^>]*>')

# The analysis prompt historically used this spelling
FIELD_ALIASES = {'featuredImage': 'featureImage'}


def fix_regex_pattern(regex: str, field: str) -> str:
    """
    Normalize an AI-suggested pattern: escape closing block tags, loosen
    class matchers so extra classes still match, terminate content patterns
    with a closing tag and reduce attribute-heavy tags elsewhere to `<tag .*?>`.
    """
    if not regex:
        return regex

    fixed = regex
    for tag in BLOCK_TAGS:
        fixed = re.sub(rf'</{tag}\b', lambda m, t=tag: f'<\\/{t}', fixed)

    if field == 'content':
        fixed = CLASS_MATCHER_RE.sub(
            lambda m: f'<{m.group(1)}\\s+class="[^"]*{m.group(2)}[^"]*"', fixed, count=1
        )
        fixed = ID_MATCHER_RE.sub(
            lambda m: f'<{m.group(1)}\\s+id="{m.group(2)}"', fixed, count=1
        )
        if '<\\/' not in fixed:
            open_tag = OPEN_TAG_RE.search(fixed)
            if open_tag:
                fixed += f'(?:.|\\s)*?<\\/{open_tag.group(1)}>'
    else:
        fixed = ATTRIBUTE_TAG_RE.sub(lambda m: f'<{m.group(1)} .*?>', fixed)

    return fixed


def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return ', '.join(str(v) for v in value)
    return str(value)


def normalize_ai_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    """Map alias keys onto the canonical field names."""
    normalized = dict(data)
    for alias, name in FIELD_ALIASES.items():
        if alias in normalized and name not in normalized:
            normalized[name] = normalized.pop(alias)
    return normalized


class ParserService:
    """
    Applies parser definitions to article pages.

    Every stored or AI-suggested pattern runs through the RegexSandbox;
    only the fixed generic-extraction patterns above run in-process.
    """

    def __init__(
        self,
        repository: Repository,
        sandbox: Optional[RegexSandbox] = None,
        fetcher: Optional[HtmlFetcher] = None,
        ai_backend: Optional[AIBackend] = None,
        prompts: Optional[Dict[str, Any]] = None,
        ai_fallback: bool = False,
        parser_timeout: float = PARSER_TIMEOUT,
    ):
        self.repository = repository
        self.sandbox = sandbox or RegexSandbox()
        self.fetcher = fetcher or HtmlFetcher()
        self.ai_backend = ai_backend
        self.prompts = prompts or {}
        self.ai_fallback = ai_fallback
        self.parser_timeout = parser_timeout
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Parsing

    async def parse_content(self, parser_id: Optional[str], url: str) -> ParseOutcome:
        """
        Extract article fields from `url`.

        With a parser_id only that definition runs; otherwise the definitions
        of channels hosted on the URL's domain are tried, falling back to
        generic extraction when there are none.
        """
        url = unquote(url)
        self.logger.info(f"Parsing content from {url} (parser={parser_id or 'auto'})")

        try:
            if parser_id:
                record = await self.repository.find_one(FEED_PARSER_ENTITY, {'id': str(parser_id)})
                if not record:
                    raise ParserNotFoundError(f"Parser {parser_id} not found")
                parsers = [ParserDefinition.from_record(record)]
            else:
                parsers = await self.find_parsers_for_url(url)

            if not parsers:
                return await self._fallback_outcome(url)

            html = await self.fetch_html(url)
            best = await self.run_parsers(parsers, html, url)
        except ParserNotFoundError:
            raise
        except FeedAggregatorError as e:
            self.logger.error(f"Error parsing content from {url}: {e}")
            raise ContentParseError(f"Failed to parse content: {e}") from e

        return ParseOutcome(
            success=True,
            data=best,
            message=f"Successfully parsed content with confidence score {best.confidence}%",
        )

    async def fetch_html(self, url: str) -> str:
        return await self.fetcher.fetch(url, timeout=PAGE_FETCH_TIMEOUT, max_bytes=PAGE_MAX_BYTES)

    async def find_parsers_for_url(self, url: str) -> List[ParserDefinition]:
        host = url_host(url)
        if not host:
            return []

        channels = await self.repository.find_all(
            FEED_CHANNELS_ENTITY, {'url': Like(f"%{host}%")}, fields=['id']
        )
        channel_ids = [str(c['id']) for c in channels if c.get('id') is not None]
        if not channel_ids:
            self.logger.debug(f"No channel registered for host {host}")
            return []

        records = await self.repository.find_all(
            FEED_PARSER_ENTITY, {'channel': In(channel_ids)}, limit=MAX_PARSERS_PER_HOST
        )
        return [ParserDefinition.from_record(r) for r in records]

    async def run_parsers(self, parsers: List[ParserDefinition], html: str, url: str) -> BestResult:
        results = await asyncio.gather(*(self._run_bounded(p, html, url) for p in parsers))

        best = BestResult(link=url)
        for result in results:
            if result is not None:
                best.merge(result)
        return best

    async def _run_bounded(self, parser: ParserDefinition, html: str, url: str) -> Optional[ParseResult]:
        try:
            return await asyncio.wait_for(self.process_parser(parser, html, url), timeout=self.parser_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"Parser {parser.id} timed out after {self.parser_timeout}s on {url}")
            return None

    async def process_parser(self, parser: ParserDefinition, html: str, url: str) -> ParseResult:
        """Run every field of one definition against the page."""
        result = ParseResult(link=url, parser_id=parser.id)

        for name in FIELD_NAMES:
            regex = parser.regex_for(name)
            if not regex:
                continue

            match = await self.sandbox.run(html, regex)
            if match is None:
                continue

            if name == 'content':
                value = match.text.strip()
            else:
                value = match.first_group_or_match().strip()
            if name == 'featureImage' and value:
                value = resolve_url(decode_url_entities(value), url)

            if value:
                setattr(result, FIELD_ATTRIBUTES[name], value)
                result.confidence += FIELD_WEIGHTS[name]

        published = await self.sandbox.run(html, PUBLISHED_TIME_PATTERN)
        if published is not None:
            pub_date = parse_feed_date(published.first_group_or_match())
            if pub_date:
                result.pub_date = pub_date
                result.confidence += PUB_DATE_WEIGHT

        self.logger.debug(f"Parser {parser.id} scored {result.confidence} on {url}")
        return result

    def generic_extraction(self, html: str, url: str) -> ParseResult:
        result = ParseResult(link=url, confidence=GENERIC_CONFIDENCE, pub_date=datetime.now(timezone.utc))

        title = GENERIC_TITLE_RE.search(html)
        if title:
            result.title = title.group(1).strip()

        for image_re in GENERIC_IMAGE_RES:
            image = image_re.search(html)
            if image:
                result.feature_image = resolve_url(decode_url_entities(image.group(1).strip()), url)
                break

        article = GENERIC_ARTICLE_RE.search(html)
        if article:
            body = article.group(0)
        else:
            body_match = GENERIC_BODY_RE.search(html)
            body = body_match.group(1) if body_match else ''
        if len(body) > GENERIC_BODY_MAX_CHARS:
            body = body[:GENERIC_BODY_MAX_CHARS] + '...'
        result.content = body

        return result

    async def _fallback_outcome(self, url: str) -> ParseOutcome:
        html = await self.fetch_html(url)

        if self.ai_fallback and self.ai_backend is not None:
            try:
                analysis = await self.analyze_url(url, html=html)
                result = self._result_from_analysis(analysis, url)
                if result.title or result.content:
                    return ParseOutcome(success=True, data=result, message="AI analysis applied.")
            except FeedAggregatorError as e:
                self.logger.warning(f"AI analysis failed for {url}, using generic extraction: {e}")

        self.logger.info(f"No parser registered for {url}, applying generic extraction")
        return ParseOutcome(
            success=True,
            data=self.generic_extraction(html, url),
            message="Generic extraction applied.",
        )

    @staticmethod
    def _result_from_analysis(analysis: Dict[str, Any], url: str) -> ParseResult:
        result = ParseResult(link=url, confidence=GENERIC_CONFIDENCE)
        for name in FIELD_NAMES:
            suggestion = analysis.get(name)
            if isinstance(suggestion, dict):
                value = _stringify(suggestion.get('value')) or ''
                if name == 'featureImage' and value:
                    value = resolve_url(decode_url_entities(value), url)
                setattr(result, FIELD_ATTRIBUTES[name], value.strip())
        return result

    # ------------------------------------------------------------------
    # AI assistance

    def _truncate_html(self, html: str) -> str:
        limit = self.prompts.get('parameters', {}).get('html_max_chars', DEFAULT_HTML_MAX_CHARS)
        if len(html) > limit:
            return html[:limit] + "..."
        return html

    def _prompt(self, key: str, **values: str) -> str:
        template = self.prompts.get(key)
        if not template:
            raise AIGenerationError(f"Prompt template '{key}' is not configured")
        return template.format(**values)

    async def _ask_for_json(self, prompt: str) -> Dict[str, Any]:
        if self.ai_backend is None:
            raise AIGenerationError("No AI backend configured")

        reply = await self.ai_backend.generate_content(prompt)
        data = extract_json_object(reply)
        if data is None:
            raise AIGenerationError("No JSON found in AI response")
        return normalize_ai_fields(data)

    async def analyze_url(self, url: str, html: Optional[str] = None) -> Dict[str, Any]:
        """Ask the AI backend for field values and patterns on an unknown page."""
        url = unquote(url)
        if html is None:
            html = await self.fetch_html(url)
        self.logger.info(f"Analyzing {url} with AI ({len(html)} chars)")

        prompt = self._prompt('analyze_page', url=url, html=self._truncate_html(html))
        data = await self._ask_for_json(prompt)

        analysis: Dict[str, Any] = {'url': url}
        for name in FIELD_NAMES:
            suggestion = data.get(name)
            if not isinstance(suggestion, dict):
                continue
            analysis[name] = {
                'value': _stringify(suggestion.get('value')),
                'regex': fix_regex_pattern(suggestion.get('regex') or '', name),
                'confidence': suggestion.get('confidence'),
            }
        return analysis

    async def refine_with_ai(self, url: str, parser: ParserDefinition) -> ParserDefinition:
        """
        Regenerate the unlocked fields of a definition. Locked fields are
        never sent for rewriting and are copied through untouched.
        """
        unlocked = parser.unlocked_fields()
        if not unlocked:
            self.logger.info(f"All fields of parser {parser.id} are locked, nothing to refine")
            return parser

        url = unquote(url)
        html = await self.fetch_html(url)

        locked_lines = [
            f"- {name}: {parser.regex_for(name)}"
            for name in FIELD_NAMES if parser.is_locked(name)
        ]
        prompt = self._prompt(
            'refine_parser',
            locked_fields="\n".join(locked_lines) or "(none)",
            unlocked_fields="\n".join(f"- {name}" for name in unlocked),
            html=self._truncate_html(html),
        )
        suggestions = await self._ask_for_json(prompt)

        refined = self.merge_suggestions(parser, suggestions, unlocked)
        self.logger.info(f"Refined {len(unlocked)} unlocked fields of parser {parser.id}")
        return refined

    @staticmethod
    def merge_suggestions(
        parser: ParserDefinition,
        suggestions: Dict[str, Any],
        unlocked: List[str],
    ) -> ParserDefinition:
        refined = copy.deepcopy(parser)
        for name in unlocked:
            suggestion = suggestions.get(name)
            if isinstance(suggestion, str):
                suggestion = {'regex': suggestion}
            if not isinstance(suggestion, dict) or not suggestion.get('regex'):
                continue
            refined.fields[name] = ParserField(
                regex=fix_regex_pattern(suggestion['regex'], name),
                locked=False,
                value=_stringify(suggestion.get('value')),
                confidence=_stringify(suggestion.get('confidence')),
            )
        return refined

    # ------------------------------------------------------------------
    # Definition management

    async def test_custom_parser(self, url: str, data: Dict[str, Any]) -> ParseOutcome:
        """Run an unsaved definition against a page."""
        url = unquote(url)
        parser = ParserDefinition.from_record({**data, 'id': data.get('id') or 'custom'})
        self.logger.info(f"Testing custom parser on {url}")

        try:
            html = await self.fetch_html(url)
            result = await asyncio.wait_for(self.process_parser(parser, html, url), timeout=self.parser_timeout)
        except asyncio.TimeoutError as e:
            self.logger.error(f"Custom parser timed out on {url}")
            raise ParseTimeoutError(f"Custom parser timed out after {self.parser_timeout}s") from e
        except FeedAggregatorError as e:
            self.logger.error(f"Error testing custom parser: {e}")
            raise ContentParseError(f"Failed to test custom parser: {e}") from e

        return ParseOutcome(success=True, data=result, message=f"Custom parser scored {result.confidence}%")

    async def analyze_all_parsers(self) -> Dict[str, Any]:
        """Report stored definitions whose patterns fail to compile."""
        records = await self.repository.find_all(FEED_PARSER_ENTITY, limit=ANALYZE_PARSERS_LIMIT)
        if not records:
            return {'success': True, 'data': [], 'message': "No parsers found to analyze."}

        problematic = []
        for record in records:
            parser = ParserDefinition.from_record(record)
            issues = []
            for name in FIELD_NAMES:
                regex = parser.regex_for(name)
                if not regex:
                    continue
                error = self.sandbox.compile_error(regex)
                if error:
                    issues.append({'field': name, 'error': error, 'regex': regex})
            if issues:
                problematic.append({'parser_id': parser.id, 'channel_id': parser.channel, 'issues': issues})

        self.logger.info(f"Analyzed {len(records)} parsers, {len(problematic)} problematic")
        return {
            'success': True,
            'data': problematic,
            'message': f"Analysis complete. Found {len(problematic)} problematic parsers.",
        }

    def validate_parser(self, parser: ParserDefinition) -> None:
        for name in FIELD_NAMES:
            regex = parser.regex_for(name)
            if not regex:
                continue
            error = self.sandbox.compile_error(regex)
            if error:
                raise InvalidPatternError(name, regex, error)

    async def create_parser(self, data: Dict[str, Any]) -> Dict[str, Any]:
        parser = ParserDefinition.from_record(data)
        self.validate_parser(parser)
        record = await self.repository.insert(FEED_PARSER_ENTITY, parser.to_record())
        self.logger.info(f"Created parser {record['id']} for channel {parser.channel}")
        return record

    async def update_parser(self, parser_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        existing = await self.repository.find_one(FEED_PARSER_ENTITY, {'id': str(parser_id)})
        if not existing:
            raise ParserNotFoundError(f"Parser {parser_id} not found")

        parser = ParserDefinition.from_record(existing)
        changes = ParserDefinition.from_record(data)
        parser.fields.update(changes.fields)
        if data.get('channel') is not None:
            parser.channel = str(data['channel'])
        self.validate_parser(parser)

        record = parser.to_record()
        await self.repository.update_by_id(FEED_PARSER_ENTITY, str(parser_id), record)
        return {**existing, **record}
