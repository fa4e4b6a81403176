"""
Feed XML decoded once into a small tagged union.

    Scalar           element with text only
    AttributedScalar element with text and attributes (Atom <link href=.../>,
                     <enclosure url=... type=...>, <media:content .../>)
    Record           element with child elements, keyed by tag
    Sequence         repeated sibling elements sharing a tag

Namespaced tags keep their conventional prefixes (media:content,
content:encoded, itunes:image, dc:creator); the Atom namespace is dropped so
Atom documents read as plain feed/entry/link.
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from feed_aggregator.utils.errors import UnsupportedFeedFormatError

logger = logging.getLogger(__name__)


NAMESPACE_PREFIXES = {
    'http://search.yahoo.com/mrss/': 'media',
    'http://search.yahoo.com/mrss': 'media',
    'http://purl.org/rss/1.0/modules/content/': 'content',
    'http://www.itunes.com/dtds/podcast-1.0.dtd': 'itunes',
    'http://purl.org/dc/elements/1.1/': 'dc',
    'http://www.w3.org/2005/Atom': '',
}


@dataclass
class Scalar:
    text: str = ''


@dataclass
class AttributedScalar:
    text: str = ''
    attributes: Dict[str, str] = field(default_factory=dict)


@dataclass
class Record:
    children: Dict[str, 'Node'] = field(default_factory=dict)
    attributes: Dict[str, str] = field(default_factory=dict)
    text: str = ''


@dataclass
class Sequence:
    items: List['Node'] = field(default_factory=list)


Node = Union[Scalar, AttributedScalar, Record, Sequence]


def _qualified_name(tag: str) -> str:
    """'{http://search.yahoo.com/mrss/}content' -> 'media:content'"""
    if not tag.startswith('{'):
        return tag
    uri, _, local = tag[1:].partition('}')
    prefix = NAMESPACE_PREFIXES.get(uri)
    if prefix:
        return f"{prefix}:{local}"
    return local


def _decode_attributes(element: ET.Element) -> Dict[str, str]:
    return {_qualified_name(key): value for key, value in element.attrib.items()}


def _inner_xml(element: ET.Element) -> str:
    parts = [element.text or '']
    for sub in element:
        parts.append(ET.tostring(sub, encoding='unicode'))
    return ''.join(parts).strip()


def decode_element(element: ET.Element) -> Node:
    attributes = _decode_attributes(element)
    children = list(element)

    # Inline XHTML content is kept as markup rather than decoded as records
    if children and attributes.get('type') == 'xhtml':
        return AttributedScalar(text=_inner_xml(element), attributes=attributes)

    if not children:
        text = (element.text or '').strip()
        if attributes:
            return AttributedScalar(text=text, attributes=attributes)
        return Scalar(text=text)

    record = Record(attributes=attributes, text=(element.text or '').strip())
    for sub in children:
        key = _qualified_name(sub.tag)
        node = decode_element(sub)
        existing = record.children.get(key)
        if existing is None:
            record.children[key] = node
        elif isinstance(existing, Sequence):
            existing.items.append(node)
        else:
            record.children[key] = Sequence(items=[existing, node])
    return record


def as_list(node: Optional[Node]) -> List[Node]:
    """A single node and a repeated tag both read as a list"""
    if node is None:
        return []
    if isinstance(node, Sequence):
        return list(node.items)
    return [node]


def first(node: Optional[Node]) -> Optional[Node]:
    items = as_list(node)
    return items[0] if items else None


def text_of(node: Optional[Node]) -> str:
    node = first(node)
    if isinstance(node, (Scalar, AttributedScalar, Record)):
        return node.text
    return ''


def attribute(node: Optional[Node], name: str) -> str:
    if isinstance(node, (AttributedScalar, Record)):
        return node.attributes.get(name, '')
    return ''


def child(node: Optional[Node], key: str) -> Optional[Node]:
    if isinstance(node, Record):
        return node.children.get(key)
    return None


@dataclass
class FeedDocument:
    """Decoded feed with its family already detected."""

    family: str  # "rss" or "atom"
    root: Record

    def entries(self) -> List[Node]:
        if self.family == 'rss':
            return as_list(child(child(self.root, 'channel'), 'item'))
        return as_list(child(self.root, 'entry'))


def parse_feed_document(xml_text: str) -> FeedDocument:
    """
    Parse raw XML and detect the feed family from the top-level shape.

    Raises UnsupportedFeedFormatError for invalid XML or any root other than
    <rss><channel> or Atom <feed>.
    """
    if not xml_text or not xml_text.strip():
        raise UnsupportedFeedFormatError("Empty feed document")

    try:
        root_element = ET.fromstring(xml_text.lstrip('\ufeff').strip())
    except ET.ParseError as e:
        raise UnsupportedFeedFormatError(f"Invalid feed XML: {e}") from e

    root_name = _qualified_name(root_element.tag)
    root = decode_element(root_element)

    if root_name == 'rss' and isinstance(child(root, 'channel'), Record):
        return FeedDocument(family='rss', root=root)
    if root_name == 'feed':
        return FeedDocument(family='atom', root=root if isinstance(root, Record) else Record())

    raise UnsupportedFeedFormatError(f"Unsupported feed format: root element <{root_name}>")
