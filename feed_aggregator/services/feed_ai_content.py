import logging
from typing import Any, Dict, List, Optional

from feed_aggregator.services.repository import FEED_AI_CONTENT_ENTITY, IsNull, Repository


# Query parameters that configure the listing rather than filter it
PAGING_KEYS = ('limit', 'fields')


class FeedAIContentService:
    """Listing and update helpers for AI-generated content records."""

    def __init__(self, repository: Repository):
        self.repository = repository
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def build_filters(queries: Dict[str, Any]) -> Dict[str, Any]:
        """Query-string values to repository filters; "null" on post_ref means unset."""
        filters: Dict[str, Any] = {}
        for key, value in queries.items():
            if key in PAGING_KEYS:
                continue
            if key in ('post_ref', 'postRef') and value in ('null', None):
                filters['post_ref'] = IsNull()
            else:
                filters[key] = value
        return filters

    async def list(self, queries: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        queries = dict(queries or {})
        limit = queries.get('limit')
        fields = queries.get('fields')
        if isinstance(fields, str):
            fields = [f.strip() for f in fields.split(',') if f.strip()]

        return await self.repository.find_all(
            FEED_AI_CONTENT_ENTITY,
            self.build_filters(queries),
            fields=fields or None,
            limit=int(limit) if limit else None,
        )

    async def update(self, record_id: str, payload: Dict[str, Any]) -> bool:
        updated = await self.repository.update_by_id(FEED_AI_CONTENT_ENTITY, record_id, payload)
        if not updated:
            self.logger.warning(f"AI content record {record_id} not found for update")
        return updated
