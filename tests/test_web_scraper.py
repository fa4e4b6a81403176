import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeFetcher
from feed_aggregator.models.content import ScrapingConfig
from feed_aggregator.services.web_scraper import (
    LISTING_MAX_BYTES,
    WebScraperService,
    build_selector_pattern,
)
from feed_aggregator.utils.errors import FetchError


BASE_URL = "https://www.example.com.br/noticias"

CARD_LISTING = """
<html><body>
  <article class="card">
    <h2 class="card-title"><a href="/noticias/1/primeira">Primeira notícia</a></h2>
    <img src="/img/1.jpg?w=1&amp;h=2">
    <span class="date">28 de outubro de 2025</span>
    <p class="excerpt">Resumo   da primeira</p>
  </article>
  <article class="card">
    <h2 class="card-title"><a href="https://www.example.com.br/noticias/2/segunda">Segunda notícia</a></h2>
  </article>
  <article class="card">
    <h2 class="card-title"><a href="/noticias/1/primeira">Duplicada</a></h2>
  </article>
  <article class="card"><p>sem titulo nem link</p></article>
</body></html>
"""

CARD_CONFIG = ScrapingConfig(
    article_selector='article',
    title_selector='.card-title',
    link_selector='h2 a',
    image_selector='img',
    date_selector='.date',
    excerpt_selector='.excerpt',
)

NEWS_ITEM_LISTING = """
<div class="list">
  <a class="news-item" href="/noticias/123/major-anunciado">
    <div class="news-item-image"><img src="https://img-cdn.example.com/a.jpg?x=1&amp;y=2"></div>
    <div class="news-item-header">Major anunciado para 2026</div>
    <div class="news-item-content">Organizadores confirmaram a sede do próximo major. 3 horas atrás</div>
    <div class="news-item-time">3 horas atrás</div>
    <a href="/tags/major">major</a>
  </a>
  <a class="news-item" href="/noticias/124/outra">
    <div class="news-item-header">Outra notícia relevante</div>
  </a>
  <a class="news-item" href="/noticias/123/major-anunciado">
    <div class="news-item-header">Repetida</div>
  </a>
</div>
"""

GENERIC_LISTING = """
<ul>
  <li><img src="https://gallerypicture.example.com/p.jpg"><a href="/news/55/big-story">Big story of the day</a></li>
  <li><a href="/news/56/x">tiny</a></li>
  <li><a href="/about">About us page</a></li>
</ul>
"""


class TestBuildSelectorPattern:
    def test_class_selector_tolerates_hyphen_variants(self) -> None:
        pattern = build_selector_pattern('.news-item')
        assert pattern.search('<div class="news-item">x</div>')
        assert pattern.search('<div class="news_item">x</div>')
        assert pattern.search('<div class="newsitem">x</div>')

    def test_id_selector(self) -> None:
        pattern = build_selector_pattern('#main-list')
        assert pattern.search('<ul id="main-list"><li>x</li></ul>')

    def test_tag_selector(self) -> None:
        match = build_selector_pattern('article').search('<div><article class="a">body</article></div>')
        assert match.group(0) == '<article class="a">body</article>'

    def test_other_selector_is_literal(self) -> None:
        pattern = build_selector_pattern('[data-x]')
        assert pattern.search('<div [data-x]>')
        assert not pattern.search('<div data-x>')


class TestExtractArticles:
    def setup_method(self) -> None:
        self.service = WebScraperService(fetcher=FakeFetcher())

    def test_extracts_configured_fields(self) -> None:
        articles = self.service.extract_articles(CARD_LISTING, BASE_URL, CARD_CONFIG)
        first = articles[0]
        assert first.title == "Primeira notícia"
        assert first.link == "https://www.example.com.br/noticias/1/primeira"
        assert first.image == "https://www.example.com.br/img/1.jpg?w=1&h=2"
        assert first.date == datetime(2025, 10, 28, tzinfo=timezone.utc)
        assert first.excerpt == "Resumo da primeira"

    def test_dedups_and_skips_incomplete_containers(self) -> None:
        articles = self.service.extract_articles(CARD_LISTING, BASE_URL, CARD_CONFIG)
        assert [a.link for a in articles] == [
            "https://www.example.com.br/noticias/1/primeira",
            "https://www.example.com.br/noticias/2/segunda",
        ]
        assert articles[1].image is None

    def test_falls_back_when_no_container_matches(self) -> None:
        config = ScrapingConfig(
            article_selector='.does-not-exist',
            title_selector='h2',
            link_selector='a',
            image_selector='img',
        )
        articles = self.service.extract_articles(NEWS_ITEM_LISTING, BASE_URL, config)
        assert len(articles) == 2


class TestLinkFallback:
    def setup_method(self) -> None:
        self.service = WebScraperService(fetcher=FakeFetcher())

    def test_news_item_anchors_with_nested_links(self) -> None:
        articles = self.service.extract_articles_from_links(NEWS_ITEM_LISTING, BASE_URL)
        assert [a.title for a in articles] == ["Major anunciado para 2026", "Outra notícia relevante"]

        first = articles[0]
        assert first.link == "https://www.example.com.br/noticias/123/major-anunciado"
        assert first.image == "https://img-cdn.example.com/a.jpg?x=1&y=2"
        assert first.excerpt == "Organizadores confirmaram a sede do próximo major."

        expected = datetime.now(timezone.utc) - timedelta(hours=3)
        assert abs((first.date - expected).total_seconds()) < 60

    def test_generic_links_with_context_image(self) -> None:
        articles = self.service.extract_articles_from_links(GENERIC_LISTING, BASE_URL)
        assert len(articles) == 1
        assert articles[0].title == "Big story of the day"
        assert articles[0].link == "https://www.example.com.br/news/55/big-story"
        assert articles[0].image == "https://gallerypicture.example.com/p.jpg"


class TestScrapeList:
    def test_fetches_with_listing_ceiling(self) -> None:
        fetcher = FakeFetcher({BASE_URL: CARD_LISTING})
        service = WebScraperService(fetcher=fetcher)
        articles = asyncio.run(service.scrape_list(BASE_URL, CARD_CONFIG))
        assert len(articles) == 2
        assert fetcher.calls[0]['max_bytes'] == LISTING_MAX_BYTES

    def test_fetch_error_propagates(self) -> None:
        service = WebScraperService(fetcher=FakeFetcher())
        with pytest.raises(FetchError):
            asyncio.run(service.scrape_list(BASE_URL))
