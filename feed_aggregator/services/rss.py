import logging
from typing import List, Optional

from feed_aggregator.models.content import NormalizedItem
from feed_aggregator.models.feed_document import (
    FeedDocument,
    Node,
    as_list,
    attribute,
    child,
    first,
    parse_feed_document,
    text_of,
)
from feed_aggregator.services.html_fetcher import HtmlFetcher
from feed_aggregator.utils.date_extraction import parse_feed_date
from feed_aggregator.utils.text import strip_cdata
from feed_aggregator.utils.urls import decode_url_entities


FEED_ACCEPT_HEADER = "application/rss+xml,application/atom+xml,application/xml;q=0.9,text/xml;q=0.8,*/*;q=0.7"
FEED_MAX_BYTES = 5 * 1024 * 1024


def _to_int(value: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class RSSService:
    """
    Fetches RSS 2.0 / Atom documents and maps their entries to NormalizedItems.
    """

    def __init__(self, fetcher: Optional[HtmlFetcher] = None, timeout: float = 15.0):
        self.fetcher = fetcher or HtmlFetcher()
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    async def fetch_feed(self, url: str) -> FeedDocument:
        """Fetch and decode a feed. Raises FetchError or UnsupportedFeedFormatError."""
        content = await self.fetcher.fetch(
            url,
            timeout=self.timeout,
            headers={"Accept": FEED_ACCEPT_HEADER},
            max_bytes=FEED_MAX_BYTES,
        )
        document = parse_feed_document(content)
        self.logger.debug(f"Decoded {document.family} feed from {url} with {len(document.entries())} entries")
        return document

    def to_items(self, document: FeedDocument) -> List[NormalizedItem]:
        if document.family == 'rss':
            return [self._rss_item(entry) for entry in document.entries()]
        return [self._atom_entry(entry) for entry in document.entries()]

    def _rss_item(self, entry: Node) -> NormalizedItem:
        content = ''
        for key in ('content:encoded', 'content', 'description'):
            content = strip_cdata(text_of(child(entry, key)))
            if content:
                break

        categories = [text_of(node) for node in as_list(child(entry, 'category'))]
        categories = [c for c in categories if c]

        pub_date = parse_feed_date(text_of(child(entry, 'pubDate')) or text_of(child(entry, 'dc:date')))

        return NormalizedItem(
            link=self._rss_link(entry),
            title=strip_cdata(text_of(child(entry, 'title'))),
            content=content,
            feature_image=self.extract_image(entry),
            pub_date=pub_date,
            category=', '.join(categories),
            tags=categories,
        )

    def _atom_entry(self, entry: Node) -> NormalizedItem:
        content = strip_cdata(text_of(child(entry, 'content'))) or strip_cdata(text_of(child(entry, 'summary')))

        terms = [attribute(node, 'term') for node in as_list(child(entry, 'category'))]
        terms = [t for t in terms if t]

        published = text_of(child(entry, 'published')) or text_of(child(entry, 'updated'))

        return NormalizedItem(
            link=self._atom_link(entry),
            title=strip_cdata(text_of(child(entry, 'title'))),
            content=content,
            feature_image=self.extract_image(entry),
            pub_date=parse_feed_date(published),
            category=terms[0] if terms else '',
            tags=terms,
        )

    @staticmethod
    def _rss_link(entry: Node) -> str:
        links = as_list(child(entry, 'link'))
        for link in links:
            if text_of(link):
                return text_of(link).strip()
        for link in links:
            href = attribute(link, 'href')
            if href:
                return href.strip()
        guid = first(child(entry, 'guid'))
        if guid is not None and attribute(guid, 'isPermaLink') != 'false':
            return text_of(guid).strip()
        return ''

    @staticmethod
    def _atom_link(entry: Node) -> str:
        links = as_list(child(entry, 'link'))
        for link in links:
            if attribute(link, 'rel') == 'alternate' and attribute(link, 'href'):
                return attribute(link, 'href').strip()
        for link in links:
            href = attribute(link, 'href') or text_of(link)
            if href:
                return href.strip()
        return ''

    def extract_image(self, entry: Node) -> str:
        """
        Feature image, first source that yields a URL wins:
        media:content (largest width, then quality), image enclosure,
        itunes:image, image, thumbnail / media:thumbnail.
        """
        url = (
            self._media_content_image(entry)
            or self._enclosure_image(entry)
            or attribute(first(child(entry, 'itunes:image')), 'href')
            or self._image_element(first(child(entry, 'image')))
            or attribute(first(child(entry, 'thumbnail')), 'url')
            or attribute(first(child(entry, 'media:thumbnail')), 'url')
        )
        return decode_url_entities(url)

    @staticmethod
    def _media_content_image(entry: Node) -> str:
        media = as_list(child(entry, 'media:content'))
        for group in as_list(child(entry, 'media:group')):
            media.extend(as_list(child(group, 'media:content')))
        if not media:
            return ''

        if len(media) == 1:
            media_type = attribute(media[0], 'type')
            if not media_type or media_type.startswith('image/'):
                return attribute(media[0], 'url')
            return ''

        images = [m for m in media if attribute(m, 'type').startswith('image/')]
        images.sort(
            key=lambda m: (_to_int(attribute(m, 'width')), _to_int(attribute(m, 'quality'))),
            reverse=True,
        )
        for image in images:
            if attribute(image, 'url'):
                return attribute(image, 'url')
        return ''

    @staticmethod
    def _enclosure_image(entry: Node) -> str:
        for enclosure in as_list(child(entry, 'enclosure')):
            if attribute(enclosure, 'type').startswith('image/'):
                return attribute(enclosure, 'url')
        return ''

    @staticmethod
    def _image_element(node: Optional[Node]) -> str:
        if node is None:
            return ''
        return text_of(child(node, 'url')) or attribute(node, 'url') or attribute(node, 'href') or text_of(node)
