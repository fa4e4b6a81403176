import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite
from dateutil.parser import isoparse

from feed_aggregator.services.repository import ENTITIES, matches_filter, project


# Columns lifted out of the JSON document so lookups by them hit an index
INDEXED_COLUMNS = ('id', 'link', 'channel')

DATETIME_MARKER = '$datetime'


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return {DATETIME_MARKER: value.isoformat()}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1 and DATETIME_MARKER in obj:
        return isoparse(obj[DATETIME_MARKER])
    return obj


def dumps(record: Dict[str, Any]) -> str:
    return json.dumps(record, default=_encode, ensure_ascii=False)


def loads(text: str) -> Dict[str, Any]:
    return json.loads(text, object_hook=_decode)


class SqliteRepository:
    """
    SQLite document store: one row per record, the record itself as JSON,
    with id/link/channel copied into indexed columns. Call
    `await initialize_db()` after constructing.

    Equality filters on indexed columns run in SQL; everything else
    (predicates, other fields) is applied to the decoded documents.
    """

    def __init__(self, db_path: str = "feeds.db"):
        self.db_path = db_path
        self.logger = logging.getLogger(__name__)

    async def initialize_db(self) -> None:
        """Create the documents table and its indexes."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    entity TEXT NOT NULL,
                    id TEXT NOT NULL,
                    link TEXT,
                    channel TEXT,
                    data TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (entity, id)
                );
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_documents_link ON documents(entity, link);"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_documents_channel ON documents(entity, channel);"
            )
            await db.commit()
        self.logger.info(f"Initialized document store at {self.db_path} for {len(ENTITIES)} entities")

    @staticmethod
    def _sql_filter(entity: str, filters: Optional[Dict[str, Any]]) -> Tuple[str, List[Any]]:
        clauses = ["entity = ?"]
        params: List[Any] = [entity]
        for key, value in (filters or {}).items():
            if key in INDEXED_COLUMNS and isinstance(value, (str, int)):
                clauses.append(f"{key} = ?")
                params.append(str(value))
        return " AND ".join(clauses), params

    async def _select(self, entity: str, filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        where, params = self._sql_filter(entity, filters)
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                f"SELECT data FROM documents WHERE {where} ORDER BY rowid", params
            )
            rows = await cur.fetchall()
        records = [loads(row[0]) for row in rows]
        return [r for r in records if matches_filter(r, filters)]

    async def find_one(self, entity: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        records = await self._select(entity, filters)
        return records[0] if records else None

    async def find_all(
        self,
        entity: str,
        filters: Optional[Dict[str, Any]] = None,
        fields: Optional[List[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        records = await self._select(entity, filters)
        if limit is not None:
            records = records[:limit]
        return [project(r, fields) for r in records]

    async def insert(self, entity: str, data: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(data)
        if record.get('id') is None:
            record['id'] = uuid.uuid4().hex
        record['id'] = str(record['id'])

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO documents (entity, id, link, channel, data) VALUES (?, ?, ?, ?, ?)",
                (
                    entity,
                    record['id'],
                    record.get('link'),
                    str(record['channel']) if record.get('channel') is not None else None,
                    dumps(record),
                ),
            )
            await db.commit()
        return record

    async def update(self, entity: str, filters: Dict[str, Any], data: Dict[str, Any]) -> int:
        records = await self._select(entity, filters)
        if not records:
            return 0

        async with aiosqlite.connect(self.db_path) as db:
            for record in records:
                record_id = record['id']
                record.update(data)
                await db.execute(
                    "UPDATE documents SET link = ?, channel = ?, data = ? WHERE entity = ? AND id = ?",
                    (
                        record.get('link'),
                        str(record['channel']) if record.get('channel') is not None else None,
                        dumps(record),
                        entity,
                        record_id,
                    ),
                )
            await db.commit()
        return len(records)

    async def update_by_id(self, entity: str, record_id: str, data: Dict[str, Any]) -> bool:
        return await self.update(entity, {'id': str(record_id)}, data) > 0
