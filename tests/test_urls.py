from feed_aggregator.utils.urls import decode_url_entities, resolve_url, url_host


class TestResolveUrl:
    def test_root_relative_uses_origin(self) -> None:
        assert resolve_url("/img/x.png", "https://a.com/b/c") == "https://a.com/img/x.png"

    def test_relative_trims_last_segment(self) -> None:
        assert resolve_url("y.png", "https://a.com/b/c") == "https://a.com/b/y.png"

    def test_protocol_relative_takes_base_scheme(self) -> None:
        assert resolve_url("//cdn.com/z.png", "https://a.com") == "https://cdn.com/z.png"

    def test_absolute_unchanged(self) -> None:
        assert resolve_url("http://x.org/p.jpg", "https://a.com/b/") == "http://x.org/p.jpg"

    def test_relative_against_directory_base(self) -> None:
        assert resolve_url("y.png", "https://a.com/b/") == "https://a.com/b/y.png"

    def test_malformed_base_returns_input(self) -> None:
        assert resolve_url("y.png", "not a url") == "y.png"

    def test_empty_url(self) -> None:
        assert resolve_url("", "https://a.com") == ""


class TestUrlHost:
    def test_host_with_port(self) -> None:
        assert url_host("https://news.example.com:8080/a") == "news.example.com:8080"

    def test_no_host(self) -> None:
        assert url_host("/relative/path") == ""


class TestDecodeUrlEntities:
    def test_amp_decoded(self) -> None:
        assert decode_url_entities("https://a.com/i.jpg?w=1&amp;h=2") == "https://a.com/i.jpg?w=1&h=2"

    def test_numeric_amp_decoded(self) -> None:
        assert decode_url_entities("a?x=1&#038;y=2") == "a?x=1&y=2"

    def test_legacy_entity_without_semicolon_kept(self) -> None:
        assert decode_url_entities("a?x=1&copy=2") == "a?x=1&copy=2"
