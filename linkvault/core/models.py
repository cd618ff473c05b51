"""Records for bookmarks, crawled content, providers and embeddings."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

TEXT_SEARCH_PROVIDER_ID = "text-search"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class ContentRole(str, Enum):
    """Whether content came from the bookmark's own URL or a followed link."""

    PRIMARY = "primary"
    RELATED = "related"


class ProviderType(str, Enum):
    """Supported embedding backends."""

    LOCALAI = "localai"
    LLAMACPP = "llamacpp"
    OLLAMA = "ollama"


class TagSource(str, Enum):
    DEFAULT = "default"
    USER = "user"
    FOLDER = "folder"
    LLM = "llm"


@dataclass
class Bookmark:
    """A saved link as supplied by the bookmark collaborator."""

    id: str
    url: str
    title: str
    hidden: bool = False
    user_description: str | None = None
    ai_summary: str | None = None
    folder_path: str | None = None
    date_added: datetime = field(default_factory=utcnow)
    last_modified: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "hidden": self.hidden,
            "user_description": self.user_description,
            "ai_summary": self.ai_summary,
            "folder_path": self.folder_path,
            "date_added": self.date_added.isoformat(),
            "last_modified": self.last_modified.isoformat(),
        }


@dataclass
class Tag:
    id: str
    name: str
    source: TagSource = TagSource.USER
    usage_count: int = 0
    description: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Content:
    """Extracted text and metadata for one (bookmark, URL) pair."""

    bookmark_id: str
    url: str
    role: ContentRole
    title: str
    text: str
    content_hash: str
    description: str | None = None
    links: list[str] = field(default_factory=list)
    fetched_at: datetime = field(default_factory=utcnow)
    fetch_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "bookmark_id": self.bookmark_id,
            "url": self.url,
            "role": self.role.value,
            "title": self.title,
            "description": self.description,
            "text": self.text,
            "content_hash": self.content_hash,
            "links": self.links,
            "fetched_at": self.fetched_at.isoformat(),
            "fetch_error": self.fetch_error,
        }


@dataclass(frozen=True)
class RelatedPage:
    """A link followed from a bookmark's primary page."""

    id: str
    bookmark_id: str
    url: str
    depth: int = 1
    title: str | None = None
    discovered_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "bookmark_id": self.bookmark_id,
            "url": self.url,
            "depth": self.depth,
            "title": self.title,
            "discovered_at": self.discovered_at.isoformat(),
        }


@dataclass
class EmbeddingProviderConfig:
    """Configuration of one embedding backend."""

    id: str
    name: str
    type: ProviderType
    endpoint: str
    model_name: str
    dimensions: int = 0  # learned from the first successful call
    document_prefix: str | None = None
    document_suffix: str | None = None
    max_context_tokens: int | None = 512
    is_active: bool = False
    is_connected: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime | None = None
    last_tested_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "endpoint": self.endpoint,
            "model_name": self.model_name,
            "dimensions": self.dimensions,
            "document_prefix": self.document_prefix,
            "document_suffix": self.document_suffix,
            "max_context_tokens": self.max_context_tokens,
            "is_active": self.is_active,
            "is_connected": self.is_connected,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "last_tested_at": self.last_tested_at.isoformat() if self.last_tested_at else None,
        }


@dataclass
class EmbeddingRecord:
    """Stored vector for one (bookmark, provider) pair."""

    bookmark_id: str
    provider_id: str
    vector: list[float]
    model_name: str
    created_at: datetime = field(default_factory=utcnow)
    is_truncated: bool = False
    token_count: int = 0

    @property
    def dimensions(self) -> int:
        return len(self.vector)

    def is_stale(self, bookmark: Bookmark) -> bool:
        """True if the bookmark was modified after this vector was produced."""
        return as_utc(bookmark.last_modified) > as_utc(self.created_at)


@dataclass
class SearchResult:
    bookmark: Bookmark
    score: float
    provider_id: str

    @property
    def is_text_search(self) -> bool:
        return self.provider_id == TEXT_SEARCH_PROVIDER_ID

    def to_dict(self) -> dict[str, Any]:
        return {
            "bookmark": self.bookmark.to_dict(),
            "score": round(self.score, 4),
            "provider_id": self.provider_id,
        }
