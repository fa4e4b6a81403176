import asyncio
from datetime import datetime, timedelta, timezone

from feed_aggregator.services.repository import (
    FEED_AI_CONTENT_ENTITY,
    FEED_CHANNELS_ENTITY,
    FEED_RAW_ENTITY,
    In,
    InMemoryRepository,
    IsNull,
    LessThan,
    Like,
    matches_filter,
    project,
)
from feed_aggregator.services.feed_ai_content import FeedAIContentService


class TestPredicates:
    def test_like_contains(self) -> None:
        assert Like("%example.com%").matches("https://www.Example.com/feed")
        assert not Like("%example.com%").matches("https://other.org")

    def test_like_single_char(self) -> None:
        assert Like("a_c").matches("abc")
        assert not Like("a_c").matches("abbc")

    def test_like_escapes_regex_chars(self) -> None:
        assert not Like("%a.b%").matches("axb")

    def test_in(self) -> None:
        assert In(["1", "2"]).matches("2")
        assert not In(["1", "2"]).matches("3")

    def test_less_than(self) -> None:
        now = datetime.now(timezone.utc)
        assert LessThan(now).matches(now - timedelta(seconds=1))
        assert not LessThan(now).matches(None)

    def test_is_null(self) -> None:
        assert IsNull().matches(None)
        assert not IsNull().matches("x")

    def test_matches_filter_mixes_equality_and_predicates(self) -> None:
        record = {'active': True, 'url': 'https://a.com', 'post_ref': None}
        assert matches_filter(record, {'active': True, 'url': Like('%a.com%'), 'post_ref': IsNull()})
        assert not matches_filter(record, {'active': False})

    def test_project(self) -> None:
        assert project({'id': '1', 'name': 'x', 'url': 'u'}, ['id', 'url']) == {'id': '1', 'url': 'u'}


class TestInMemoryRepository:
    def test_insert_assigns_id(self) -> None:
        repo = InMemoryRepository()
        record = asyncio.run(repo.insert(FEED_RAW_ENTITY, {'link': 'https://a.com/1'}))
        assert record['id']
        assert asyncio.run(repo.find_one(FEED_RAW_ENTITY, {'link': 'https://a.com/1'}))['id'] == record['id']

    def test_returned_records_are_copies(self) -> None:
        repo = InMemoryRepository({FEED_CHANNELS_ENTITY: [{'id': 'c1', 'tags': ['a']}]})
        found = asyncio.run(repo.find_one(FEED_CHANNELS_ENTITY, {'id': 'c1'}))
        found['tags'].append('b')
        assert asyncio.run(repo.find_one(FEED_CHANNELS_ENTITY, {'id': 'c1'}))['tags'] == ['a']

    def test_find_all_limit_and_fields(self) -> None:
        repo = InMemoryRepository({FEED_CHANNELS_ENTITY: [
            {'id': str(i), 'name': f'c{i}', 'active': True} for i in range(5)
        ]})
        found = asyncio.run(repo.find_all(FEED_CHANNELS_ENTITY, {'active': True}, fields=['id'], limit=2))
        assert found == [{'id': '0'}, {'id': '1'}]

    def test_update_and_update_by_id(self) -> None:
        repo = InMemoryRepository({FEED_CHANNELS_ENTITY: [{'id': 'c1', 'name': 'old'}]})
        assert asyncio.run(repo.update_by_id(FEED_CHANNELS_ENTITY, 'c1', {'name': 'new'})) is True
        assert asyncio.run(repo.update_by_id(FEED_CHANNELS_ENTITY, 'missing', {'name': 'x'})) is False
        assert asyncio.run(repo.find_one(FEED_CHANNELS_ENTITY, {'id': 'c1'}))['name'] == 'new'


class TestFeedAIContentService:
    def setup_method(self) -> None:
        self.repo = InMemoryRepository({FEED_AI_CONTENT_ENTITY: [
            {'id': 'a', 'title': 'one', 'post_ref': None, 'status': 'ready'},
            {'id': 'b', 'title': 'two', 'post_ref': 'p1', 'status': 'ready'},
            {'id': 'c', 'title': 'three', 'post_ref': None, 'status': 'draft'},
        ]})
        self.service = FeedAIContentService(self.repo)

    def test_null_post_ref_maps_to_is_null(self) -> None:
        records = asyncio.run(self.service.list({'postRef': 'null', 'status': 'ready'}))
        assert [r['id'] for r in records] == ['a']

    def test_limit_and_fields(self) -> None:
        records = asyncio.run(self.service.list({'limit': '2', 'fields': 'id,title'}))
        assert records == [{'id': 'a', 'title': 'one'}, {'id': 'b', 'title': 'two'}]

    def test_update(self) -> None:
        assert asyncio.run(self.service.update('b', {'status': 'published'})) is True
        assert asyncio.run(self.repo.find_one(FEED_AI_CONTENT_ENTITY, {'id': 'b'}))['status'] == 'published'
        assert asyncio.run(self.service.update('zzz', {'status': 'x'})) is False


class TestSqliteRepository:
    def test_round_trip_with_predicates(self, tmp_path) -> None:
        from feed_aggregator.services.sqlite_repository import SqliteRepository

        async def scenario():
            repo = SqliteRepository(str(tmp_path / "feeds.db"))
            await repo.initialize_db()
            published = datetime(2025, 10, 28, 10, 30, tzinfo=timezone.utc)
            inserted = await repo.insert(FEED_RAW_ENTITY, {
                'link': 'https://a.com/1', 'channel': 'c1', 'pub_date': published, 'status': 'pending',
            })
            await repo.insert(FEED_RAW_ENTITY, {'link': 'https://a.com/2', 'channel': 'c2', 'pub_date': None})

            by_link = await repo.find_one(FEED_RAW_ENTITY, {'link': 'https://a.com/1'})
            by_channel = await repo.find_all(FEED_RAW_ENTITY, {'channel': In(['c1', 'c2'])})
            null_dates = await repo.find_all(FEED_RAW_ENTITY, {'pub_date': IsNull()}, fields=['link'])
            updated = await repo.update_by_id(FEED_RAW_ENTITY, inserted['id'], {'status': 'done'})
            after = await repo.find_one(FEED_RAW_ENTITY, {'id': inserted['id']})
            return by_link, by_channel, null_dates, updated, after

        by_link, by_channel, null_dates, updated, after = asyncio.run(scenario())
        assert by_link['pub_date'] == datetime(2025, 10, 28, 10, 30, tzinfo=timezone.utc)
        assert len(by_channel) == 2
        assert null_dates == [{'link': 'https://a.com/2'}]
        assert updated is True
        assert after['status'] == 'done'
