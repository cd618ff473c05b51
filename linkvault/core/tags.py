"""Tag lookup for the indexer, with an explicit tag-name cache."""

from __future__ import annotations

import logging
import uuid
from typing import Callable, Iterable

from linkvault.core.errors import LinkvaultError, NotFoundError
from linkvault.core.models import Tag, TagSource, utcnow
from linkvault.core.storage import DB

logger = logging.getLogger(__name__)


class TagNameCache:
    """id -> name map loaded on first use and dropped on invalidate().

    hits / misses count resolve() calls, so tests can assert when the
    cache was (re)built.
    """

    def __init__(self) -> None:
        self._names: dict[str, str] | None = None
        self.hits = 0
        self.misses = 0

    @property
    def is_loaded(self) -> bool:
        return self._names is not None

    def resolve(self, tag_ids: Iterable[str], loader: Callable[[], dict[str, str]]) -> list[str]:
        """Names for tag_ids, in order. Unknown ids are skipped."""
        if self._names is None:
            self.misses += 1
            self._names = loader()
        else:
            self.hits += 1
        return [self._names[tag_id] for tag_id in tag_ids if tag_id in self._names]

    def invalidate(self) -> None:
        self._names = None


class TagLookup:
    """Tag CRUD and bookmark/tag links, backed by the tags tables."""

    def __init__(self, db: DB, cache: TagNameCache | None = None) -> None:
        self._db = db
        self.cache = cache or TagNameCache()

    def _load_names(self) -> dict[str, str]:
        return {tag.id: tag.name for tag in self._db.list_tags()}

    def _require(self, tag_id: str) -> Tag:
        tag = self._db.get_tag(tag_id)
        if tag is None:
            raise NotFoundError(f'Tag with id "{tag_id}" not found')
        return tag

    # ==================== Lookup ====================

    def get_tag(self, tag_id: str) -> Tag | None:
        return self._db.get_tag(tag_id)

    def get_tag_by_name(self, name: str) -> Tag | None:
        return self._db.get_tag_by_name(name)

    def list_tags(self) -> list[Tag]:
        return self._db.list_tags()

    def get_bookmark_tags(self, bookmark_id: str) -> list[Tag]:
        tags = (self._db.get_tag(tag_id) for tag_id in self._db.get_bookmark_tag_ids(bookmark_id))
        return [tag for tag in tags if tag is not None]

    def get_tag_names(self, bookmark_id: str) -> list[str]:
        return self.cache.resolve(self._db.get_bookmark_tag_ids(bookmark_id), self._load_names)

    # ==================== Mutations ====================

    def create_tag(self, name: str, source: TagSource = TagSource.USER, description: str | None = None) -> Tag:
        name = name.strip()
        if not name:
            raise LinkvaultError("Tag name must not be empty")
        if self._db.get_tag_by_name(name):
            raise LinkvaultError(f'Tag with name "{name}" already exists')

        tag = Tag(id=uuid.uuid4().hex, name=name, source=source, description=description)
        self._db.save_tag(tag)
        self.cache.invalidate()
        return tag

    def rename_tag(self, tag_id: str, new_name: str) -> Tag:
        tag = self._require(tag_id)
        new_name = new_name.strip()
        if not new_name:
            raise LinkvaultError("Tag name must not be empty")
        existing = self._db.get_tag_by_name(new_name)
        if existing and existing.id != tag_id:
            raise LinkvaultError(
                f'Cannot rename: Tag with name "{new_name}" already exists. Use merge_tags to combine them.'
            )

        tag.name = new_name
        tag.updated_at = utcnow()
        self._db.save_tag(tag)
        self.cache.invalidate()
        return tag

    def delete_tag(self, tag_id: str) -> None:
        tag = self._require(tag_id)
        if tag.source == TagSource.DEFAULT:
            raise LinkvaultError("Cannot delete default tags")

        self._db.delete_tag(tag_id)
        self.cache.invalidate()
        logger.info(f"Deleted tag {tag.name}")

    def merge_tags(self, source_tag_id: str, target_tag_id: str) -> Tag:
        """Move every bookmark of source onto target, then delete source."""
        if source_tag_id == target_tag_id:
            raise LinkvaultError("Cannot merge a tag with itself")
        source = self._require(source_tag_id)
        self._require(target_tag_id)
        if source.source == TagSource.DEFAULT:
            raise LinkvaultError("Cannot merge default tags")

        self._db.move_bookmark_tags(source_tag_id, target_tag_id)
        self._db.delete_tag(source_tag_id)
        self.cache.invalidate()
        logger.info(f"Merged tag {source.name} into {target_tag_id}")
        return self._require(target_tag_id)

    def assign_tag(self, bookmark_id: str, tag_id: str) -> bool:
        tag = self._require(tag_id)
        if not self._db.add_bookmark_tag(bookmark_id, tag_id):
            return False
        tag.usage_count += 1
        tag.updated_at = utcnow()
        self._db.save_tag(tag)
        return True

    def remove_tag(self, bookmark_id: str, tag_id: str) -> bool:
        tag = self._require(tag_id)
        if not self._db.remove_bookmark_tag(bookmark_id, tag_id):
            return False
        tag.usage_count = max(0, tag.usage_count - 1)
        tag.updated_at = utcnow()
        self._db.save_tag(tag)
        return True
