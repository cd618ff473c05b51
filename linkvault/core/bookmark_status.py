from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Iterable

from linkvault.core.models import Bookmark
from linkvault.core.provider_service import ProviderService
from linkvault.core.storage import DB


@dataclass
class BookmarkStatus:
    is_crawled: bool = False
    is_indexed: bool = False
    has_ai_summary: bool = False
    has_user_description: bool = False
    is_stale: bool = False

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)


class BookmarkStatusService:
    """Crawled / indexed / stale flags, measured against the active provider."""

    def __init__(self, db: DB, providers: ProviderService) -> None:
        self._db = db
        self._providers = providers

    def get_bookmark_status(self, bookmark_id: str) -> BookmarkStatus:
        bookmark = self._db.get_bookmark(bookmark_id)
        if bookmark is None:
            return BookmarkStatus()
        crawled = bookmark_id in self._db.get_crawled_bookmark_ids()
        return self._status(bookmark, crawled, self._active_provider_id())

    def get_batch_status(self, bookmarks: Iterable[Bookmark]) -> dict[str, BookmarkStatus]:
        crawled = self._db.get_crawled_bookmark_ids()
        provider_id = self._active_provider_id()
        return {b.id: self._status(b, b.id in crawled, provider_id) for b in bookmarks}

    def _active_provider_id(self) -> str | None:
        provider = self._providers.get_active_provider()
        return provider.id if provider else None

    def _status(self, bookmark: Bookmark, crawled: bool, provider_id: str | None) -> BookmarkStatus:
        record = self._db.get_embedding(bookmark.id, provider_id) if provider_id else None
        return BookmarkStatus(
            is_crawled=crawled,
            is_indexed=record is not None,
            has_ai_summary=bool(bookmark.ai_summary),
            has_user_description=bool(bookmark.user_description),
            is_stale=record.is_stale(bookmark) if record else False,
        )
