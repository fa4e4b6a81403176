"""
Generic persistence interface used by the aggregation core, plus an in-memory
implementation for tests and dry runs.

Filters are plain dicts mapping a field name to either a value (equality) or
one of the predicate objects below.
"""

import copy
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence


FEED_CHANNELS_ENTITY = "FeedChannelsEntity"
FEED_RAW_ENTITY = "FeedRawEntity"
FEED_PARSER_ENTITY = "FeedParserEntity"
FEED_AI_CONTENT_ENTITY = "FeedAIContentEntity"

ENTITIES = (FEED_CHANNELS_ENTITY, FEED_RAW_ENTITY, FEED_PARSER_ENTITY, FEED_AI_CONTENT_ENTITY)


@dataclass(frozen=True)
class LessThan:
    value: Any

    def matches(self, candidate: Any) -> bool:
        if candidate is None:
            return False
        try:
            return candidate < self.value
        except TypeError:
            return False


@dataclass(frozen=True)
class Like:
    """SQL LIKE: % matches any run of characters, _ exactly one. Case-insensitive."""

    pattern: str

    def to_regex(self) -> re.Pattern:
        parts = []
        for char in self.pattern:
            if char == '%':
                parts.append('.*')
            elif char == '_':
                parts.append('.')
            else:
                parts.append(re.escape(char))
        return re.compile('^' + ''.join(parts) + '$', re.IGNORECASE | re.DOTALL)

    def matches(self, candidate: Any) -> bool:
        if candidate is None:
            return False
        return bool(self.to_regex().match(str(candidate)))


@dataclass(frozen=True)
class In:
    values: Sequence[Any]

    def matches(self, candidate: Any) -> bool:
        return candidate in self.values


@dataclass(frozen=True)
class IsNull:
    def matches(self, candidate: Any) -> bool:
        return candidate is None


PREDICATE_TYPES = (LessThan, Like, In, IsNull)


def matches_filter(record: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    for key, expected in (filters or {}).items():
        candidate = record.get(key)
        if isinstance(expected, PREDICATE_TYPES):
            if not expected.matches(candidate):
                return False
        elif candidate != expected:
            return False
    return True


def project(record: Dict[str, Any], fields: Optional[Iterable[str]]) -> Dict[str, Any]:
    if not fields:
        return record
    return {key: record.get(key) for key in fields}


class Repository(Protocol):
    async def find_one(self, entity: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    async def find_all(
        self,
        entity: str,
        filters: Optional[Dict[str, Any]] = None,
        fields: Optional[List[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    async def insert(self, entity: str, data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def update(self, entity: str, filters: Dict[str, Any], data: Dict[str, Any]) -> int:
        ...

    async def update_by_id(self, entity: str, record_id: str, data: Dict[str, Any]) -> bool:
        ...


class InMemoryRepository:
    """
    Dict-backed repository. Records are deep-copied on the way in and out so
    callers never share state with the store.
    """

    def __init__(self, seed: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._tables: Dict[str, List[Dict[str, Any]]] = {entity: [] for entity in ENTITIES}
        self.logger = logging.getLogger(__name__)
        for entity, records in (seed or {}).items():
            for record in records:
                self._insert_now(entity, record)

    def _table(self, entity: str) -> List[Dict[str, Any]]:
        return self._tables.setdefault(entity, [])

    def _insert_now(self, entity: str, data: Dict[str, Any]) -> Dict[str, Any]:
        record = copy.deepcopy(data)
        if record.get('id') is None:
            record['id'] = uuid.uuid4().hex
        record['id'] = str(record['id'])
        self._table(entity).append(record)
        return copy.deepcopy(record)

    async def find_one(self, entity: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for record in self._table(entity):
            if matches_filter(record, filters):
                return copy.deepcopy(record)
        return None

    async def find_all(
        self,
        entity: str,
        filters: Optional[Dict[str, Any]] = None,
        fields: Optional[List[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        results = []
        for record in self._table(entity):
            if not matches_filter(record, filters):
                continue
            results.append(project(copy.deepcopy(record), fields))
            if limit is not None and len(results) >= limit:
                break
        return results

    async def insert(self, entity: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert_now(entity, data)

    async def update(self, entity: str, filters: Dict[str, Any], data: Dict[str, Any]) -> int:
        count = 0
        for record in self._table(entity):
            if matches_filter(record, filters):
                record.update(copy.deepcopy(data))
                count += 1
        return count

    async def update_by_id(self, entity: str, record_id: str, data: Dict[str, Any]) -> bool:
        return await self.update(entity, {'id': str(record_id)}, data) > 0

    def count(self, entity: str) -> int:
        return len(self._table(entity))
