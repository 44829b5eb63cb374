"""
Fallback Search - substring matching over the durable log.

Used whenever the similarity index is unavailable. Only the newest
2 x limit files of a category are scanned, and hits come back newest
first with a constant FALLBACK_DISTANCE: this trades relevance for
availability, it is not a similarity ranking.
"""

import json
import logging

from .log_writer import DurableLog
from .models import FALLBACK_DISTANCE, ConversationFilter, OperationalFilter, RecordKind, SearchResult

logger = logging.getLogger(__name__)


class FallbackSearch:
    """Recency-ordered substring search over a DurableLog."""

    def __init__(self, log: DurableLog):
        self._log = log

    async def search(
        self,
        query: str,
        category: str,
        kind: RecordKind,
        limit: int,
        record_filter: ConversationFilter | OperationalFilter | None = None,
    ) -> list[SearchResult]:
        """
        Case-insensitive substring search.

        Args:
            query: Text to look for; empty matches every record
            category: Log category to scan
            kind: Kind stamped on each result
            limit: Max results; 2 x limit files are scanned
            record_filter: Optional exact-match metadata filter

        Returns:
            Matching records, newest first
        """
        if limit <= 0:
            return []

        needle = query.lower()
        results: list[SearchResult] = []
        paths = (await self._log.entries(category))[: limit * 2]

        for path in paths:
            try:
                data = await self._log.read(path)
            except (OSError, ValueError):
                logger.warning("Skipping unreadable memory file %s", path.name)
                continue
            if not isinstance(data, dict):
                continue
            if record_filter is not None and not record_filter.matches(data):
                continue

            content = json.dumps(data, ensure_ascii=False)
            if needle in content.lower():
                results.append(
                    SearchResult(
                        content=content,
                        metadata=data,
                        distance=FALLBACK_DISTANCE,
                        kind=kind,
                    )
                )
                if len(results) >= limit:
                    break

        return results
