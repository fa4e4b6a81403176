"""
Text cleanup helpers for scraped markup.
"""

import re

from bs4 import BeautifulSoup


WHITESPACE_RE = re.compile(r'\s+')
CDATA_RE = re.compile(r'^\s*<!\[CDATA\[(.*)\]\]>\s*$', re.DOTALL)


def clean_text(text: str) -> str:
    """Collapse runs of whitespace (newlines included) into single spaces."""
    if not text:
        return ''
    return WHITESPACE_RE.sub(' ', text).strip()


def strip_html_tags(markup: str) -> str:
    """
    Remove tags, scripts and styles from a markup fragment and return plain,
    whitespace-normalized text with entities decoded.
    """
    if not markup:
        return ''
    if '<' not in markup and '&' not in markup:
        return clean_text(markup)

    soup = BeautifulSoup(markup, 'html.parser')
    for element in soup(['script', 'style']):
        element.decompose()
    return clean_text(soup.get_text(' '))


def strip_cdata(text: str) -> str:
    """Unwrap a literal <![CDATA[...]]> wrapper that survived XML decoding."""
    if not text:
        return ''
    match = CDATA_RE.match(text)
    if match:
        return match.group(1).strip()
    return text


def html_to_markup(fragment: str) -> str:
    """
    Convert an article HTML fragment to lightweight markup: paragraphs and
    line breaks become newlines, headings and <strong> become **bold**,
    <em> becomes *italic*, links become "text (href)". Scripts, styles and
    ad containers are dropped.
    """
    if not fragment:
        return ''

    content = re.sub(r'<script[\s\S]*?</script>', '', fragment, flags=re.I)
    content = re.sub(r'<style[\s\S]*?</style>', '', content, flags=re.I)
    content = re.sub(
        r'<div[^>]*class=["\'][^"\']*\bad[^"\']*["\'][^>]*>[\s\S]*?</div>', '', content, flags=re.I
    )

    replacements = [
        (r'<p[^>]*>', '\n\n'),
        (r'</p>', ''),
        (r'<br\s*/?>', '\n'),
        (r'<h[1-6][^>]*>', '\n\n**'),
        (r'</h[1-6]>', '**\n\n'),
        (r'<strong[^>]*>', '**'),
        (r'</strong>', '**'),
        (r'<em[^>]*>', '*'),
        (r'</em>', '*'),
    ]
    for pattern, replacement in replacements:
        content = re.sub(pattern, replacement, content, flags=re.I)

    content = re.sub(
        r'<a[^>]*href=["\']([^"\']+)["\'][^>]*>(.*?)</a>',
        lambda m: f"{m.group(2)} ({m.group(1)})",
        content,
        flags=re.I | re.S,
    )
    content = re.sub(r'<[^>]+>', '', content)

    for entity, char in (('&nbsp;', ' '), ('&amp;', '&'), ('&lt;', '<'),
                         ('&gt;', '>'), ('&quot;', '"'), ('&#39;', "'")):
        content = content.replace(entity, char)

    content = re.sub(r'\n{3,}', '\n\n', content)
    return content.strip()
