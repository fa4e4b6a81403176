"""
URL helpers shared by the scraper, the parser engine and the ingestor.
"""

from urllib.parse import urlsplit


def resolve_url(url: str, base_url: str) -> str:
    """
    Resolve a relative, root-relative or protocol-relative URL against base_url.

    Rules, in order:
    - already absolute (http/https): returned unchanged
    - protocol-relative (//host/path): base scheme prefixed
    - root-relative (/path): base origin prefixed
    - anything else: appended to the base path with its last segment trimmed

    A malformed base URL leaves the input untouched. Never raises.
    """
    if not url:
        return ''

    if url.startswith('http://') or url.startswith('https://'):
        return url

    try:
        base = urlsplit(base_url)
    except (ValueError, TypeError):
        return url

    if not base.scheme or not base.netloc:
        return url

    if url.startswith('//'):
        return f"{base.scheme}:{url}"

    if url.startswith('/'):
        return f"{base.scheme}://{base.netloc}{url}"

    base_path = base.path or '/'
    if not base_path.endswith('/'):
        base_path = base_path[:base_path.rfind('/') + 1]

    return f"{base.scheme}://{base.netloc}{base_path}{url}"


def url_host(url: str) -> str:
    """Host (with port) of a URL, or an empty string when it has none"""
    try:
        return urlsplit(url).netloc
    except (ValueError, TypeError):
        return ''


URL_ENTITIES = (
    ('&amp;', '&'),
    ('&#038;', '&'),
    ('&#38;', '&'),
    ('&lt;', '<'),
    ('&gt;', '>'),
    ('&quot;', '"'),
    ('&#39;', "'"),
    ('&#x27;', "'"),
)


def decode_url_entities(url: str) -> str:
    """
    Decode the HTML entities commonly left in URLs scraped from markup.

    html.unescape is not used here: it also expands legacy entities without
    a trailing semicolon, which corrupts query strings such as "?a=1&copy=2".
    """
    if not url:
        return ''
    for entity, char in URL_ENTITIES:
        url = url.replace(entity, char)
    return url.strip()
