"""
Exception taxonomy for the feed aggregation core.

Per-item and per-parser failures are caught and recorded by the callers;
only the public entry points (process_feed, parse_content, ...) let these
escape to the request handler.
"""

from typing import Optional


class FeedAggregatorError(Exception):
    """Base class for all errors raised by the aggregation core"""
    pass


class FetchError(FeedAggregatorError):
    """Network failure, non-2xx status, timeout or undecodable body"""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class ParseTimeoutError(FeedAggregatorError):
    """A regex run or a parser race exceeded its time budget"""
    pass


class InvalidPatternError(FeedAggregatorError):
    """A parser field holds a regular expression that does not compile"""

    def __init__(self, field: str, pattern: str, message: str):
        super().__init__(f'Invalid regular expression for field "{field}": {message}')
        self.field = field
        self.pattern = pattern


class AITimeoutError(FeedAggregatorError):
    """The AI backend did not answer within its timeout"""
    pass


class AIGenerationError(FeedAggregatorError):
    """The AI backend failed or returned nothing usable"""
    pass


class ChannelNotFoundError(FeedAggregatorError):
    pass


class ParserNotFoundError(FeedAggregatorError):
    pass


class UnsupportedFeedFormatError(FeedAggregatorError):
    """The document is neither RSS 2.0 nor Atom, or is not XML at all"""
    pass


class ContentParseError(FeedAggregatorError):
    """Nothing could be fetched or parsed for an article URL"""
    pass
