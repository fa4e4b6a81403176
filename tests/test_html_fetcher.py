import asyncio

import pytest

from feed_aggregator.services.html_fetcher import HtmlFetcher
from feed_aggregator.utils.errors import FetchError


class TestCharsetFrom:
    def test_declared(self) -> None:
        assert HtmlFetcher.charset_from("text/html; charset=ISO-8859-1") == "iso-8859-1"

    def test_quoted(self) -> None:
        assert HtmlFetcher.charset_from('text/html; charset="utf-8"') == "utf-8"

    def test_missing_defaults_to_utf8(self) -> None:
        assert HtmlFetcher.charset_from("text/html") == "utf-8"


class TestDecode:
    def test_utf8(self) -> None:
        assert HtmlFetcher.decode("notícia".encode("utf-8"), "text/html; charset=utf-8") == "notícia"

    def test_latin1_declared(self) -> None:
        assert HtmlFetcher.decode("notícia".encode("latin-1"), "text/html; charset=iso-8859-1") == "notícia"

    def test_unknown_charset_falls_back_to_utf8(self) -> None:
        assert HtmlFetcher.decode(b"plain", "text/html; charset=x-made-up") == "plain"

    def test_invalid_utf8_replaced(self) -> None:
        text = HtmlFetcher.decode(b"caf\xe9", "text/html")
        assert text.startswith("caf")
        assert "�" in text


class TestFetch:
    def test_malformed_url_raises_fetch_error(self) -> None:
        fetcher = HtmlFetcher()
        with pytest.raises(FetchError):
            asyncio.run(fetcher.fetch("not a url", timeout=1.0))
