"""
Lightweight article extraction from HTML listing pages.

Selectors are CSS-like strings translated to regular expressions; there is no
DOM. Only class (.x), id (#x), tag (t), tag.class and descendant forms
("h3 a", whose last part is used) are understood, and comma-separated lists
are tried in order.
"""

import logging
import re
from typing import List, Optional, Protocol, Set

from feed_aggregator.models.content import ScrapedArticle, ScrapingConfig
from feed_aggregator.services.html_fetcher import HtmlFetcher
from feed_aggregator.utils.date_extraction import parse_listing_date, parse_relative_date
from feed_aggregator.utils.text import clean_text, strip_html_tags
from feed_aggregator.utils.urls import decode_url_entities, resolve_url


LISTING_MAX_BYTES = 500 * 1024
SELECTOR_FLAGS = re.IGNORECASE | re.DOTALL

TAG_NAME_RE = re.compile(r'^[a-z][a-z0-9-]*$', re.I)
TAG_CLASS_RE = re.compile(r'^([a-z][a-z0-9-]*)\.([\w-]+)$', re.I)

HREF_RE = re.compile(r'<a\b[^>]*?href=["\']([^"\']+)["\']', re.I)
IMG_SRC_RE = re.compile(r'<img\b[^>]*?(?:data-src|src)=["\']([^"\']+)["\']', re.I)

NEWS_ITEM_OPEN_RE = re.compile(r'<a\s+[^>]*class=["\'][^"\']*news-item[^"\']*["\'][^>]*>', re.I)
NEWS_HREF_RE = re.compile(r'href=["\']([^"\']*/(?:noticias|news)/[^"\']+)["\']', re.I)
ANCHOR_TOKEN_RE = re.compile(r'<a\s|</a\s*>', re.I)
NEWS_ITEM_HEADER_RE = re.compile(r'<div[^>]*class=["\'][^"\']*news-item-header[^"\']*["\'][^>]*>(.*?)</div>', re.I | re.S)
NEWS_ITEM_IMAGE_RE = re.compile(
    r'<div[^>]*class=["\'][^"\']*news-item-image[^"\']*["\'][^>]*>.*?<img[^>]*src=["\']([^"\']+)["\']', re.I | re.S
)
NEWS_ITEM_TIME_RE = re.compile(r'<div[^>]*class=["\'][^"\']*news-item-time[^"\']*["\'][^>]*>(.*?)</div>', re.I | re.S)
NEWS_ITEM_CONTENT_RE = re.compile(r'<div[^>]*class=["\'][^"\']*news-item-content[^"\']*["\'][^>]*>(.*?)</div>', re.I | re.S)
RELATIVE_FOOTER_RE = re.compile(r'\d+\s+(?:horas?|hours?|dias?|days?)\s+atr[áa]s.*$', re.I)

GENERIC_NEWS_LINK_RE = re.compile(r'<a[^>]*href=["\']([^"\']*/(?:noticias|news)/[^"\']+)["\'][^>]*>(.*?)</a>', re.I | re.S)
CDN_IMAGE_RE = re.compile(r'<img[^>]*src=["\']([^"\']+(?:gallerypicture|img-cdn)[^"\']+)["\']', re.I)

CONTEXT_WINDOW = 1000
MIN_TITLE_LENGTH = 5


def _name_pattern(name: str) -> str:
    """Escaped class/id name whose hyphens also match underscores or nothing"""
    return re.escape(name).replace(r'\-', '[-_]?')


def build_selector_pattern(selector: str) -> re.Pattern:
    """
    Translate one simple selector into a container-matching regex.

    .class  -> any element whose class attribute contains the name
    #id     -> any element whose id attribute contains the name
    tag     -> <tag ...>...</tag>
    other   -> the selector text as an escaped literal
    """
    selector = selector.strip()

    if selector.startswith('.'):
        name = _name_pattern(selector[1:])
        return re.compile(rf'<[^>]*class=["\'][^"\']*{name}[^"\']*["\'][^>]*>.*?</[^>]+>', SELECTOR_FLAGS)

    if selector.startswith('#'):
        name = _name_pattern(selector[1:])
        return re.compile(rf'<[^>]*id=["\'][^"\']*{name}[^"\']*["\'][^>]*>.*?</[^>]+>', SELECTOR_FLAGS)

    if TAG_NAME_RE.match(selector):
        return re.compile(rf'<{selector}\b[^>]*>.*?</{selector}>', SELECTOR_FLAGS)

    return re.compile(re.escape(selector), SELECTOR_FLAGS)


def _capture_pattern(part: str) -> Optional[re.Pattern]:
    """Regex whose first group is the inner markup of the element a simple selector names"""
    tag_class = TAG_CLASS_RE.match(part)
    if tag_class:
        tag, name = tag_class.group(1), _name_pattern(tag_class.group(2))
        return re.compile(
            rf'<{tag}\b[^>]*class=["\'][^"\']*{name}[^"\']*["\'][^>]*>(.*?)</{tag}>', SELECTOR_FLAGS
        )
    if part.startswith('.'):
        name = _name_pattern(part[1:])
        return re.compile(rf'<[^>]*class=["\'][^"\']*{name}[^"\']*["\'][^>]*>(.*?)</[^>]+>', SELECTOR_FLAGS)
    if part.startswith('#'):
        name = _name_pattern(part[1:])
        return re.compile(rf'<[^>]*id=["\'][^"\']*{name}[^"\']*["\'][^>]*>(.*?)</[^>]+>', SELECTOR_FLAGS)
    if TAG_NAME_RE.match(part):
        return re.compile(rf'<{part}\b[^>]*>(.*?)</{part}>', SELECTOR_FLAGS)
    return None


def split_selectors(selector: Optional[str]) -> List[str]:
    return [s.strip() for s in (selector or '').split(',') if s.strip()]


def _last_part(selector: str) -> str:
    return selector.split()[-1]


def _tag_of(part: str) -> str:
    tag_class = TAG_CLASS_RE.match(part)
    if tag_class:
        return tag_class.group(1).lower()
    return part.lower() if TAG_NAME_RE.match(part) else ''


class SelectorStrategy(Protocol):
    """How selectors are applied to markup."""

    def find_containers(self, html: str, selector: str) -> List[str]:
        ...

    def extract_text(self, html: str, selector: str) -> str:
        ...

    def extract_link(self, html: str, selector: str) -> str:
        ...

    def extract_image(self, html: str, selector: str) -> str:
        ...


class RegexSelectorStrategy:
    """Default selector engine: every selector becomes a regex."""

    def find_containers(self, html: str, selector: str) -> List[str]:
        for candidate in split_selectors(selector):
            pattern = build_selector_pattern(_last_part(candidate))
            matches = [m.group(0) for m in pattern.finditer(html)]
            if matches:
                return matches
        return []

    def extract_text(self, html: str, selector: str) -> str:
        for candidate in split_selectors(selector):
            pattern = _capture_pattern(_last_part(candidate))
            if pattern is None:
                continue
            for match in pattern.finditer(html):
                text = strip_html_tags(match.group(1))
                if text:
                    return text
        return ''

    def extract_link(self, html: str, selector: str) -> str:
        return self._first_attribute(html, selector, 'a', HREF_RE)

    def extract_image(self, html: str, selector: str) -> str:
        return self._first_attribute(html, selector, 'img', IMG_SRC_RE)

    def _first_attribute(self, html: str, selector: str, tag: str, attribute_re: re.Pattern) -> str:
        candidates = split_selectors(selector)

        # A selector ending in the wanted tag means "the first such tag in the container"
        if any(_tag_of(_last_part(c)) == tag for c in candidates):
            match = attribute_re.search(html)
            if match:
                return match.group(1)

        for candidate in candidates:
            region = build_selector_pattern(_last_part(candidate)).search(html)
            if not region:
                continue
            match = attribute_re.search(region.group(0))
            if match:
                return match.group(1)
        return ''


class WebScraperService:
    """
    Turns a listing page into ScrapedArticles using a channel's ScrapingConfig,
    with a link-pattern fallback for pages the selectors don't fit.
    """

    def __init__(
        self,
        fetcher: Optional[HtmlFetcher] = None,
        strategy: Optional[SelectorStrategy] = None,
        timeout: float = 15.0,
    ):
        self.fetcher = fetcher or HtmlFetcher()
        self.strategy = strategy or RegexSelectorStrategy()
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    async def scrape_list(self, url: str, config: Optional[ScrapingConfig] = None) -> List[ScrapedArticle]:
        """Fetch a listing page and extract its articles. Raises FetchError."""
        config = config or ScrapingConfig.default()
        self.logger.info(f"Scraping news list from: {url}")

        html = await self.fetcher.fetch(url, timeout=self.timeout, max_bytes=LISTING_MAX_BYTES)
        self.logger.debug(f"Fetched HTML ({len(html)} characters)")

        articles = self.extract_articles(html, url, config)
        self.logger.info(f"Extracted {len(articles)} articles from {url}")
        return articles

    def extract_articles(self, html: str, base_url: str, config: ScrapingConfig) -> List[ScrapedArticle]:
        containers = self.strategy.find_containers(html, config.article_selector)
        self.logger.debug(f"Found {len(containers)} containers for selector {config.article_selector!r}")

        if not containers:
            self.logger.info("No articles found with selectors, falling back to link extraction")
            return self.extract_articles_from_links(html, base_url)

        articles: List[ScrapedArticle] = []
        seen: Set[str] = set()

        for container in containers:
            title = self.strategy.extract_text(container, config.title_selector)
            link = self.strategy.extract_link(container, config.link_selector)
            if not title or not link:
                continue

            link = resolve_url(decode_url_entities(link), base_url)
            if link in seen:
                continue
            seen.add(link)

            image = self.strategy.extract_image(container, config.image_selector)

            date = None
            if config.date_selector:
                date = parse_listing_date(self.strategy.extract_text(container, config.date_selector))

            excerpt = None
            if config.excerpt_selector:
                excerpt = clean_text(self.strategy.extract_text(container, config.excerpt_selector)) or None

            articles.append(ScrapedArticle(
                title=clean_text(title),
                link=link,
                image=resolve_url(decode_url_entities(image), base_url) if image else None,
                date=date,
                excerpt=excerpt,
            ))

        return articles

    def extract_articles_from_links(self, html: str, base_url: str) -> List[ScrapedArticle]:
        """
        Fallback for pages the selectors don't fit: `.news-item` anchors
        pointing under /noticias/ or /news/ first, then any such link.
        """
        seen: Set[str] = set()
        articles = self._extract_news_item_anchors(html, base_url, seen)

        if not articles:
            self.logger.debug("No .news-item anchors found, trying generic link extraction")
            articles = self._extract_generic_links(html, base_url, seen)

        self.logger.info(f"Fallback extracted {len(articles)} unique articles")
        return articles

    @staticmethod
    def _anchor_end(html: str, start: int) -> Optional[int]:
        """Index of the </a> closing the anchor whose content starts at `start`"""
        depth = 0
        for token in ANCHOR_TOKEN_RE.finditer(html, start):
            if token.group(0).startswith('</'):
                if depth == 0:
                    return token.start()
                depth -= 1
            else:
                depth += 1
        return None

    def _extract_news_item_anchors(self, html: str, base_url: str, seen: Set[str]) -> List[ScrapedArticle]:
        articles: List[ScrapedArticle] = []

        for open_tag in NEWS_ITEM_OPEN_RE.finditer(html):
            href_match = NEWS_HREF_RE.search(open_tag.group(0))
            if not href_match:
                continue
            href = href_match.group(1)
            if href in seen:
                continue

            end = self._anchor_end(html, open_tag.end())
            if end is None:
                continue
            item_html = html[open_tag.end():end]

            title = ''
            header = NEWS_ITEM_HEADER_RE.search(item_html)
            if header:
                title = strip_html_tags(header.group(1))
            if not title:
                text = strip_html_tags(item_html)
                title = text if len(text) > 10 else ''
            if len(title) < MIN_TITLE_LENGTH:
                continue

            image = None
            image_match = NEWS_ITEM_IMAGE_RE.search(item_html)
            if image_match:
                image = resolve_url(decode_url_entities(image_match.group(1)), base_url)

            date = None
            time_match = NEWS_ITEM_TIME_RE.search(item_html)
            if time_match:
                date = parse_relative_date(strip_html_tags(time_match.group(1)))

            excerpt = None
            content_match = NEWS_ITEM_CONTENT_RE.search(item_html)
            if content_match:
                content = strip_html_tags(content_match.group(1)).replace(title, '').strip()
                content = RELATIVE_FOOTER_RE.sub('', content).strip()
                if 20 < len(content) < 300:
                    excerpt = content

            articles.append(ScrapedArticle(
                title=title,
                link=resolve_url(decode_url_entities(href), base_url),
                image=image,
                date=date,
                excerpt=excerpt,
            ))
            seen.add(href)

        return articles

    def _extract_generic_links(self, html: str, base_url: str, seen: Set[str]) -> List[ScrapedArticle]:
        articles: List[ScrapedArticle] = []

        for match in GENERIC_NEWS_LINK_RE.finditer(html):
            href = match.group(1)
            if href in seen:
                continue

            title = strip_html_tags(match.group(2))
            if len(title) < MIN_TITLE_LENGTH:
                continue

            context = html[max(0, match.start() - CONTEXT_WINDOW):match.end() + CONTEXT_WINDOW]

            image = None
            image_match = CDN_IMAGE_RE.search(context)
            if image_match:
                image = resolve_url(decode_url_entities(image_match.group(1)), base_url)

            articles.append(ScrapedArticle(
                title=title,
                link=resolve_url(decode_url_entities(href), base_url),
                image=image,
                date=parse_relative_date(strip_html_tags(context)),
            ))
            seen.add(href)

        return articles
