"""Turns bookmarks into stored embeddings with the active provider."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from linkvault.core.content_preparation import ContentPreparationService
from linkvault.core.embedding_providers import EmbeddingError
from linkvault.core.errors import LinkvaultError, NotFoundError
from linkvault.core.models import Bookmark, EmbeddingRecord, utcnow
from linkvault.core.provider_service import ProviderService
from linkvault.core.storage import DB
from linkvault.core.tags import TagLookup
from linkvault.core.vector_math import truncate_to_token_limit

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTEXT_TOKENS = 512
INDEX_THROTTLE_MS = 200


@dataclass
class IndexingResult:
    success: bool
    bookmark_id: str
    provider_id: str = ""
    error: str | None = None
    token_count: int | None = None
    is_truncated: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class IndexingProgress:
    total: int
    current: int = 0
    succeeded: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class IndexEventType(str, Enum):
    """Types of events streamed while indexing everything."""

    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class IndexEvent:
    type: IndexEventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_sse(self) -> str:
        """Format as Server-Sent Event."""
        event_data = {
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            **self.data,
        }
        return f"event: {self.type.value}\ndata: {json.dumps(event_data)}\n\n"


ProgressCallback = Callable[[IndexingProgress], None]


class IndexingService:
    """Embeds bookmarks one at a time.

    index_bookmark never raises for domain failures (missing provider or
    bookmark, provider errors); they come back as success=False so bulk
    indexing can carry on.
    """

    def __init__(
        self,
        db: DB,
        providers: ProviderService,
        tags: TagLookup,
        content_prep: ContentPreparationService | None = None,
        throttle_ms: int = INDEX_THROTTLE_MS,
    ) -> None:
        self._db = db
        self._providers = providers
        self._tags = tags
        self._content_prep = content_prep or ContentPreparationService()
        self._throttle_ms = throttle_ms

    async def index_bookmark(self, bookmark_id: str) -> IndexingResult:
        try:
            provider = self._providers.require_active_provider()

            bookmark = self._db.get_bookmark(bookmark_id)
            if bookmark is None:
                raise NotFoundError("Bookmark not found")

            prepared = self._content_prep.prepare_content_for_embedding(
                bookmark, self._tags.get_tag_names(bookmark_id)
            )
            truncation = truncate_to_token_limit(
                prepared.text, provider.max_context_tokens or DEFAULT_MAX_CONTEXT_TOKENS
            )

            adapter = self._providers.get_adapter(provider.type)
            result = await adapter.generate_embedding(
                truncation.text,
                provider.endpoint,
                provider.model_name,
                provider.document_prefix,
                provider.document_suffix,
            )

            self._db.save_embedding(
                EmbeddingRecord(
                    bookmark_id=bookmark_id,
                    provider_id=provider.id,
                    vector=result.embedding,
                    model_name=provider.model_name,
                    is_truncated=truncation.is_truncated,
                    token_count=truncation.token_count,
                )
            )
            self._providers.record_usage(provider.id, result.dimensions)

        except (LinkvaultError, EmbeddingError) as e:
            logger.warning(f"Indexing failed for {bookmark_id}: {e}")
            return IndexingResult(success=False, bookmark_id=bookmark_id, error=str(e))

        if truncation.is_truncated:
            logger.debug(f"Truncated {bookmark_id} to {truncation.token_count} tokens")
        return IndexingResult(
            success=True,
            bookmark_id=bookmark_id,
            provider_id=provider.id,
            token_count=truncation.token_count,
            is_truncated=truncation.is_truncated,
        )

    async def index_all_bookmarks(self, on_progress: ProgressCallback | None = None) -> list[IndexingResult]:
        """Index every bookmark sequentially, pausing after each one."""
        bookmarks = self._db.list_bookmarks()
        progress = IndexingProgress(total=len(bookmarks))
        results: list[IndexingResult] = []

        logger.info(f"Indexing {len(bookmarks)} bookmarks")
        for bookmark in bookmarks:
            result = await self.index_bookmark(bookmark.id)
            results.append(result)

            progress.current += 1
            if result.success:
                progress.succeeded += 1
            else:
                progress.failed += 1

            if on_progress:
                on_progress(progress)

            await asyncio.sleep(self._throttle_ms / 1000)

        logger.info(f"Indexing done: {progress.succeeded} succeeded, {progress.failed} failed")
        return results

    # ==================== Status ====================

    def is_bookmark_indexed(self, bookmark_id: str, provider_id: str | None = None) -> bool:
        if provider_id:
            provider = self._providers.get_provider(provider_id)
        else:
            provider = self._providers.get_active_provider()
        if provider is None:
            return False
        return self._db.get_embedding(bookmark_id, provider.id) is not None

    def get_bookmark_indexing_status(self, bookmark_id: str) -> dict[str, Any]:
        embeddings = self._db.get_embeddings_for_bookmark(bookmark_id)
        return {
            "is_indexed": bool(embeddings),
            "providers": [e.provider_id for e in embeddings],
        }

    def get_unindexed_bookmarks(self) -> list[Bookmark]:
        """Bookmarks without an embedding from the active provider."""
        provider = self._providers.get_active_provider()
        if provider is None:
            return []
        indexed = self._db.get_indexed_bookmark_ids(provider.id)
        return [b for b in self._db.list_bookmarks() if b.id not in indexed]

    def get_stale_bookmarks(self) -> list[Bookmark]:
        """Bookmarks edited after their active-provider embedding was made."""
        provider = self._providers.get_active_provider()
        if provider is None:
            return []
        stale = []
        for bookmark in self._db.list_bookmarks():
            record = self._db.get_embedding(bookmark.id, provider.id)
            if record is not None and record.is_stale(bookmark):
                stale.append(bookmark)
        return stale

    def delete_bookmark_embeddings(self, bookmark_id: str) -> int:
        return self._db.delete_embeddings_for_bookmark(bookmark_id)
