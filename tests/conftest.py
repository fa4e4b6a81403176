import re
from typing import Dict, List, Optional, Union

import pytest

from feed_aggregator.services.regex_sandbox import RegexMatch, RegexSandbox
from feed_aggregator.services.repository import InMemoryRepository
from feed_aggregator.utils.errors import FetchError


class FakeFetcher:
    """Serves canned pages by URL; unknown URLs fail like a 404."""

    def __init__(self, pages: Optional[Dict[str, Union[str, Exception]]] = None):
        self.pages = dict(pages or {})
        self.calls: List[Dict] = []

    async def fetch(self, url, timeout=15.0, headers=None, max_bytes=None, stop_marker=None):
        self.calls.append({
            'url': url,
            'timeout': timeout,
            'headers': headers,
            'max_bytes': max_bytes,
            'stop_marker': stop_marker,
        })
        page = self.pages.get(url)
        if isinstance(page, Exception):
            raise page
        if page is None:
            raise FetchError(f"HTTP 404 for {url}", url=url, status=404)
        return page

    def urls(self) -> List[str]:
        return [call['url'] for call in self.calls]


class FakeAIBackend:
    """Returns queued replies in order and records every prompt."""

    def __init__(self, replies: Optional[List[Union[str, Exception]]] = None):
        self.replies = list(replies or [])
        self.prompts: List[str] = []

    async def generate_content(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class InlineRegexSandbox(RegexSandbox):
    """Sandbox with the same validation but matching in-process, for fast tests."""

    def _run_in_process(self, subject, pattern, flags, timeout):
        match = re.compile(pattern, flags).search(subject)
        return RegexMatch.from_match(match) if match else None


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def sandbox():
    return InlineRegexSandbox()
