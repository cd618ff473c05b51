from __future__ import annotations

import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator

import sqlite_vec

from linkvault.core.models import (
    Bookmark,
    Content,
    ContentRole,
    EmbeddingProviderConfig,
    EmbeddingRecord,
    ProviderType,
    RelatedPage,
    Tag,
    TagSource,
    as_utc,
)
from linkvault.core.vector_math import deserialize_f32, serialize_f32

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS bookmarks (
  id TEXT PRIMARY KEY,
  url TEXT NOT NULL,
  title TEXT NOT NULL,
  hidden INTEGER NOT NULL DEFAULT 0,
  user_description TEXT,
  ai_summary TEXT,
  folder_path TEXT,
  date_added TEXT NOT NULL,
  last_modified TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_bookmarks_url ON bookmarks(url);

CREATE TABLE IF NOT EXISTS tags (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL UNIQUE,
  source TEXT NOT NULL DEFAULT 'user',
  usage_count INTEGER NOT NULL DEFAULT 0,
  description TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

-- rowid order is assignment order
CREATE TABLE IF NOT EXISTS bookmark_tags (
  bookmark_id TEXT NOT NULL,
  tag_id TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
  assigned_at TEXT DEFAULT (datetime('now')),
  PRIMARY KEY (bookmark_id, tag_id)
);

CREATE INDEX IF NOT EXISTS idx_bookmark_tags_tag_id ON bookmark_tags(tag_id);

-- Crawled content, one row per (bookmark, url)
CREATE TABLE IF NOT EXISTS content (
  bookmark_id TEXT NOT NULL,
  url TEXT NOT NULL,
  role TEXT NOT NULL,  -- primary, related
  title TEXT NOT NULL,
  description TEXT,
  text TEXT NOT NULL,
  content_hash TEXT NOT NULL,
  links_json TEXT NOT NULL DEFAULT '[]',
  fetched_at TEXT NOT NULL,
  fetch_error TEXT,
  PRIMARY KEY (bookmark_id, url)
);

CREATE INDEX IF NOT EXISTS idx_content_role ON content(bookmark_id, role);

CREATE TABLE IF NOT EXISTS related_pages (
  id TEXT PRIMARY KEY,
  bookmark_id TEXT NOT NULL,
  url TEXT NOT NULL,
  depth INTEGER NOT NULL DEFAULT 1,
  title TEXT,
  discovered_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_related_pages_bookmark_id ON related_pages(bookmark_id);

CREATE TABLE IF NOT EXISTS embedding_providers (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  type TEXT NOT NULL,  -- localai, llamacpp, ollama
  endpoint TEXT NOT NULL,
  model_name TEXT NOT NULL,
  dimensions INTEGER NOT NULL DEFAULT 0,
  document_prefix TEXT,
  document_suffix TEXT,
  max_context_tokens INTEGER,
  is_active INTEGER NOT NULL DEFAULT 0,
  is_connected INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL,
  last_used_at TEXT,
  last_tested_at TEXT
);

-- One vector per (bookmark, provider), float32 blob readable by sqlite-vec
CREATE TABLE IF NOT EXISTS embeddings (
  bookmark_id TEXT NOT NULL,
  provider_id TEXT NOT NULL,
  embedding BLOB NOT NULL,
  model_name TEXT NOT NULL,
  created_at TEXT NOT NULL,
  is_truncated INTEGER NOT NULL DEFAULT 0,
  token_count INTEGER NOT NULL DEFAULT 0,
  PRIMARY KEY (bookmark_id, provider_id)
);

CREATE INDEX IF NOT EXISTS idx_embeddings_provider_id ON embeddings(provider_id);

CREATE TABLE IF NOT EXISTS app_settings (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at TEXT DEFAULT (datetime('now'))
);
"""


def _ts(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value else None


def _dt(value: str | None) -> datetime | None:
    return as_utc(datetime.fromisoformat(value)) if value else None


def _bookmark_from_row(row: sqlite3.Row) -> Bookmark:
    return Bookmark(
        id=row["id"],
        url=row["url"],
        title=row["title"],
        hidden=bool(row["hidden"]),
        user_description=row["user_description"],
        ai_summary=row["ai_summary"],
        folder_path=row["folder_path"],
        date_added=_dt(row["date_added"]),
        last_modified=_dt(row["last_modified"]),
    )


def _tag_from_row(row: sqlite3.Row) -> Tag:
    return Tag(
        id=row["id"],
        name=row["name"],
        source=TagSource(row["source"]),
        usage_count=row["usage_count"],
        description=row["description"],
        created_at=_dt(row["created_at"]),
        updated_at=_dt(row["updated_at"]),
    )


def _content_from_row(row: sqlite3.Row) -> Content:
    return Content(
        bookmark_id=row["bookmark_id"],
        url=row["url"],
        role=ContentRole(row["role"]),
        title=row["title"],
        description=row["description"],
        text=row["text"],
        content_hash=row["content_hash"],
        links=json.loads(row["links_json"]),
        fetched_at=_dt(row["fetched_at"]),
        fetch_error=row["fetch_error"],
    )


def _provider_from_row(row: sqlite3.Row) -> EmbeddingProviderConfig:
    return EmbeddingProviderConfig(
        id=row["id"],
        name=row["name"],
        type=ProviderType(row["type"]),
        endpoint=row["endpoint"],
        model_name=row["model_name"],
        dimensions=row["dimensions"],
        document_prefix=row["document_prefix"],
        document_suffix=row["document_suffix"],
        max_context_tokens=row["max_context_tokens"],
        is_active=bool(row["is_active"]),
        is_connected=bool(row["is_connected"]),
        created_at=_dt(row["created_at"]),
        last_used_at=_dt(row["last_used_at"]),
        last_tested_at=_dt(row["last_tested_at"]),
    )


def _embedding_from_row(row: sqlite3.Row) -> EmbeddingRecord:
    return EmbeddingRecord(
        bookmark_id=row["bookmark_id"],
        provider_id=row["provider_id"],
        vector=deserialize_f32(row["embedding"]),
        model_name=row["model_name"],
        created_at=_dt(row["created_at"]),
        is_truncated=bool(row["is_truncated"]),
        token_count=row["token_count"],
    )


@dataclass
class DB:
    conn: sqlite3.Connection

    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    def get_stats(self) -> dict[str, int]:
        counts = {}
        for table in ("bookmarks", "content", "related_pages", "embedding_providers", "embeddings"):
            cur = self.conn.execute(f"SELECT COUNT(*) FROM {table}")
            counts[table] = cur.fetchone()[0]
        return counts

    # ==================== Bookmarks ====================

    def save_bookmark(self, bookmark: Bookmark) -> None:
        """Insert or replace a bookmark record."""
        self.conn.execute(
            """
            INSERT INTO bookmarks (
                id, url, title, hidden, user_description, ai_summary,
                folder_path, date_added, last_modified
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                url = excluded.url,
                title = excluded.title,
                hidden = excluded.hidden,
                user_description = excluded.user_description,
                ai_summary = excluded.ai_summary,
                folder_path = excluded.folder_path,
                last_modified = excluded.last_modified
            """,
            (
                bookmark.id,
                bookmark.url,
                bookmark.title,
                int(bookmark.hidden),
                bookmark.user_description,
                bookmark.ai_summary,
                bookmark.folder_path,
                _ts(bookmark.date_added),
                _ts(bookmark.last_modified),
            ),
        )
        self.conn.commit()

    def get_bookmark(self, bookmark_id: str) -> Bookmark | None:
        cur = self.conn.execute("SELECT * FROM bookmarks WHERE id = ?", (bookmark_id,))
        row = cur.fetchone()
        return _bookmark_from_row(row) if row else None

    def list_bookmarks(self) -> list[Bookmark]:
        cur = self.conn.execute("SELECT * FROM bookmarks ORDER BY date_added, id")
        return [_bookmark_from_row(row) for row in cur.fetchall()]

    def delete_bookmark(self, bookmark_id: str) -> bool:
        cur = self.conn.execute("DELETE FROM bookmarks WHERE id = ?", (bookmark_id,))
        self.conn.execute("DELETE FROM bookmark_tags WHERE bookmark_id = ?", (bookmark_id,))
        self.conn.commit()
        return cur.rowcount > 0

    # ==================== Tags ====================

    def save_tag(self, tag: Tag) -> None:
        self.conn.execute(
            """
            INSERT INTO tags (id, name, source, usage_count, description, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                source = excluded.source,
                usage_count = excluded.usage_count,
                description = excluded.description,
                updated_at = excluded.updated_at
            """,
            (
                tag.id,
                tag.name,
                tag.source.value,
                tag.usage_count,
                tag.description,
                _ts(tag.created_at),
                _ts(tag.updated_at),
            ),
        )
        self.conn.commit()

    def get_tag(self, tag_id: str) -> Tag | None:
        cur = self.conn.execute("SELECT * FROM tags WHERE id = ?", (tag_id,))
        row = cur.fetchone()
        return _tag_from_row(row) if row else None

    def get_tag_by_name(self, name: str) -> Tag | None:
        cur = self.conn.execute("SELECT * FROM tags WHERE name = ?", (name,))
        row = cur.fetchone()
        return _tag_from_row(row) if row else None

    def list_tags(self) -> list[Tag]:
        cur = self.conn.execute("SELECT * FROM tags ORDER BY name")
        return [_tag_from_row(row) for row in cur.fetchall()]

    def delete_tag(self, tag_id: str) -> None:
        self.conn.execute("DELETE FROM bookmark_tags WHERE tag_id = ?", (tag_id,))
        self.conn.execute("DELETE FROM tags WHERE id = ?", (tag_id,))
        self.conn.commit()

    def add_bookmark_tag(self, bookmark_id: str, tag_id: str) -> bool:
        """Link a tag to a bookmark. Returns False if already linked."""
        cur = self.conn.execute(
            "INSERT OR IGNORE INTO bookmark_tags (bookmark_id, tag_id) VALUES (?, ?)",
            (bookmark_id, tag_id),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def remove_bookmark_tag(self, bookmark_id: str, tag_id: str) -> bool:
        cur = self.conn.execute(
            "DELETE FROM bookmark_tags WHERE bookmark_id = ? AND tag_id = ?",
            (bookmark_id, tag_id),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def get_bookmark_tag_ids(self, bookmark_id: str) -> list[str]:
        cur = self.conn.execute(
            "SELECT tag_id FROM bookmark_tags WHERE bookmark_id = ? ORDER BY rowid",
            (bookmark_id,),
        )
        return [row[0] for row in cur.fetchall()]

    def move_bookmark_tags(self, source_tag_id: str, target_tag_id: str) -> None:
        """Re-point every link of source_tag_id to target_tag_id, then recount both."""
        self.conn.execute(
            """
            INSERT OR IGNORE INTO bookmark_tags (bookmark_id, tag_id, assigned_at)
            SELECT bookmark_id, ?, assigned_at FROM bookmark_tags WHERE tag_id = ? ORDER BY rowid
            """,
            (target_tag_id, source_tag_id),
        )
        self.conn.execute("DELETE FROM bookmark_tags WHERE tag_id = ?", (source_tag_id,))
        for tag_id in (source_tag_id, target_tag_id):
            self.conn.execute(
                """
                UPDATE tags SET usage_count = (
                    SELECT COUNT(*) FROM bookmark_tags WHERE tag_id = ?
                ) WHERE id = ?
                """,
                (tag_id, tag_id),
            )
        self.conn.commit()

    # ==================== Content ====================

    def save_content(self, content: Content) -> None:
        """Store crawled content.

        A primary record replaces any earlier primary record of the same
        bookmark, even if it was fetched from a different URL.
        """
        if content.role == ContentRole.PRIMARY:
            self.conn.execute(
                "DELETE FROM content WHERE bookmark_id = ? AND role = ?",
                (content.bookmark_id, ContentRole.PRIMARY.value),
            )
        self.conn.execute(
            """
            INSERT INTO content (
                bookmark_id, url, role, title, description, text,
                content_hash, links_json, fetched_at, fetch_error
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(bookmark_id, url) DO UPDATE SET
                role = excluded.role,
                title = excluded.title,
                description = excluded.description,
                text = excluded.text,
                content_hash = excluded.content_hash,
                links_json = excluded.links_json,
                fetched_at = excluded.fetched_at,
                fetch_error = excluded.fetch_error
            """,
            (
                content.bookmark_id,
                content.url,
                content.role.value,
                content.title,
                content.description,
                content.text,
                content.content_hash,
                json.dumps(content.links),
                _ts(content.fetched_at),
                content.fetch_error,
            ),
        )
        self.conn.commit()

    def get_content_for_bookmark(self, bookmark_id: str) -> list[Content]:
        cur = self.conn.execute(
            "SELECT * FROM content WHERE bookmark_id = ? ORDER BY role, fetched_at",
            (bookmark_id,),
        )
        return [_content_from_row(row) for row in cur.fetchall()]

    def get_primary_content(self, bookmark_id: str) -> Content | None:
        cur = self.conn.execute(
            "SELECT * FROM content WHERE bookmark_id = ? AND role = ?",
            (bookmark_id, ContentRole.PRIMARY.value),
        )
        row = cur.fetchone()
        return _content_from_row(row) if row else None

    def get_crawled_bookmark_ids(self) -> set[str]:
        cur = self.conn.execute("SELECT DISTINCT bookmark_id FROM content")
        return {row[0] for row in cur.fetchall()}

    def save_related_page(self, page: RelatedPage) -> None:
        self.conn.execute(
            """
            INSERT OR REPLACE INTO related_pages (id, bookmark_id, url, depth, title, discovered_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (page.id, page.bookmark_id, page.url, page.depth, page.title, _ts(page.discovered_at)),
        )
        self.conn.commit()

    def get_related_pages(self, bookmark_id: str) -> list[RelatedPage]:
        cur = self.conn.execute(
            "SELECT * FROM related_pages WHERE bookmark_id = ? ORDER BY discovered_at",
            (bookmark_id,),
        )
        return [
            RelatedPage(
                id=row["id"],
                bookmark_id=row["bookmark_id"],
                url=row["url"],
                depth=row["depth"],
                title=row["title"],
                discovered_at=_dt(row["discovered_at"]),
            )
            for row in cur.fetchall()
        ]

    def delete_content_for_bookmark(self, bookmark_id: str) -> dict[str, int]:
        """Delete all content and related pages of a bookmark."""
        cur = self.conn.execute("DELETE FROM content WHERE bookmark_id = ?", (bookmark_id,))
        content_deleted = cur.rowcount
        cur = self.conn.execute("DELETE FROM related_pages WHERE bookmark_id = ?", (bookmark_id,))
        pages_deleted = cur.rowcount
        self.conn.commit()
        return {"content": content_deleted, "related_pages": pages_deleted}

    # ==================== Embedding Providers ====================

    def insert_provider(self, provider: EmbeddingProviderConfig) -> None:
        self.conn.execute(
            """
            INSERT INTO embedding_providers (
                id, name, type, endpoint, model_name, dimensions,
                document_prefix, document_suffix, max_context_tokens,
                is_active, is_connected, created_at, last_used_at, last_tested_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            self._provider_params(provider),
        )
        self.conn.commit()

    def update_provider(self, provider: EmbeddingProviderConfig) -> None:
        params = self._provider_params(provider)
        self.conn.execute(
            """
            UPDATE embedding_providers SET
                name = ?, type = ?, endpoint = ?, model_name = ?, dimensions = ?,
                document_prefix = ?, document_suffix = ?, max_context_tokens = ?,
                is_active = ?, is_connected = ?, created_at = ?,
                last_used_at = ?, last_tested_at = ?
            WHERE id = ?
            """,
            (*params[1:], params[0]),
        )
        self.conn.commit()

    @staticmethod
    def _provider_params(provider: EmbeddingProviderConfig) -> tuple[Any, ...]:
        return (
            provider.id,
            provider.name,
            provider.type.value,
            provider.endpoint,
            provider.model_name,
            provider.dimensions,
            provider.document_prefix,
            provider.document_suffix,
            provider.max_context_tokens,
            int(provider.is_active),
            int(provider.is_connected),
            _ts(provider.created_at),
            _ts(provider.last_used_at),
            _ts(provider.last_tested_at),
        )

    def get_provider(self, provider_id: str) -> EmbeddingProviderConfig | None:
        cur = self.conn.execute("SELECT * FROM embedding_providers WHERE id = ?", (provider_id,))
        row = cur.fetchone()
        return _provider_from_row(row) if row else None

    def list_providers(self) -> list[EmbeddingProviderConfig]:
        cur = self.conn.execute("SELECT * FROM embedding_providers ORDER BY created_at, id")
        return [_provider_from_row(row) for row in cur.fetchall()]

    def get_active_provider(self) -> EmbeddingProviderConfig | None:
        cur = self.conn.execute("SELECT * FROM embedding_providers WHERE is_active = 1 LIMIT 1")
        row = cur.fetchone()
        return _provider_from_row(row) if row else None

    def set_active_provider(self, provider_id: str, used_at: datetime) -> None:
        """Make provider_id the only active provider, in one transaction."""
        with self.conn:
            self.conn.execute("UPDATE embedding_providers SET is_active = 0")
            self.conn.execute(
                "UPDATE embedding_providers SET is_active = 1, last_used_at = ? WHERE id = ?",
                (_ts(used_at), provider_id),
            )

    def touch_provider(self, provider_id: str, used_at: datetime, dimensions: int | None = None) -> None:
        """Record provider use, and its dimensions if they were unknown."""
        self.conn.execute(
            """
            UPDATE embedding_providers SET
                last_used_at = ?,
                dimensions = CASE WHEN dimensions = 0 AND ? IS NOT NULL THEN ? ELSE dimensions END
            WHERE id = ?
            """,
            (_ts(used_at), dimensions, dimensions, provider_id),
        )
        self.conn.commit()

    def delete_provider(self, provider_id: str) -> bool:
        cur = self.conn.execute("DELETE FROM embedding_providers WHERE id = ?", (provider_id,))
        self.conn.commit()
        return cur.rowcount > 0

    # ==================== Embeddings ====================

    def save_embedding(self, record: EmbeddingRecord) -> None:
        """Store an embedding, replacing any earlier one for the same pair."""
        self.conn.execute(
            """
            INSERT OR REPLACE INTO embeddings (
                bookmark_id, provider_id, embedding, model_name,
                created_at, is_truncated, token_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.bookmark_id,
                record.provider_id,
                serialize_f32(record.vector),
                record.model_name,
                _ts(record.created_at),
                int(record.is_truncated),
                record.token_count,
            ),
        )
        self.conn.commit()

    def get_embedding(self, bookmark_id: str, provider_id: str) -> EmbeddingRecord | None:
        cur = self.conn.execute(
            "SELECT * FROM embeddings WHERE bookmark_id = ? AND provider_id = ?",
            (bookmark_id, provider_id),
        )
        row = cur.fetchone()
        return _embedding_from_row(row) if row else None

    def get_embeddings_for_bookmark(self, bookmark_id: str) -> list[EmbeddingRecord]:
        cur = self.conn.execute(
            "SELECT * FROM embeddings WHERE bookmark_id = ? ORDER BY created_at",
            (bookmark_id,),
        )
        return [_embedding_from_row(row) for row in cur.fetchall()]

    def iter_embeddings_for_provider(self, provider_id: str) -> Iterator[EmbeddingRecord]:
        """Stream every stored vector of a provider for a linear scan."""
        cur = self.conn.execute(
            "SELECT * FROM embeddings WHERE provider_id = ?",
            (provider_id,),
        )
        for row in cur:
            yield _embedding_from_row(row)

    def get_indexed_bookmark_ids(self, provider_id: str) -> set[str]:
        cur = self.conn.execute(
            "SELECT bookmark_id FROM embeddings WHERE provider_id = ?",
            (provider_id,),
        )
        return {row[0] for row in cur.fetchall()}

    def count_embeddings(self, provider_id: str) -> int:
        cur = self.conn.execute(
            "SELECT COUNT(*) FROM embeddings WHERE provider_id = ?",
            (provider_id,),
        )
        return cur.fetchone()[0]

    def get_embedding_dimensions(self, provider_id: str) -> dict[int, int]:
        """Count stored vectors per dimensionality (via sqlite-vec's vec_length)."""
        cur = self.conn.execute(
            """
            SELECT vec_length(embedding) AS dims, COUNT(*)
            FROM embeddings
            WHERE provider_id = ?
            GROUP BY dims
            """,
            (provider_id,),
        )
        return {row[0]: row[1] for row in cur.fetchall()}

    def delete_embeddings_for_bookmark(self, bookmark_id: str) -> int:
        cur = self.conn.execute("DELETE FROM embeddings WHERE bookmark_id = ?", (bookmark_id,))
        self.conn.commit()
        return cur.rowcount

    # ==================== App Settings ====================

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        """Get a setting value by key."""
        cur = self.conn.execute("SELECT value FROM app_settings WHERE key = ?", (key,))
        row = cur.fetchone()
        return row[0] if row else default

    def set_setting(self, key: str, value: str) -> None:
        """Set a setting value (upsert)."""
        self.conn.execute(
            """
            INSERT INTO app_settings (key, value, updated_at)
            VALUES (?, ?, datetime('now'))
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = datetime('now')
            """,
            (key, value),
        )
        self.conn.commit()


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with sqlite-vec loaded."""
    if db_path != ":memory:":
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    # sqlite-vec must be loaded into this connection
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)
    return conn


def open_db(db_path: str) -> DB:
    """Connect, load sqlite-vec and apply the schema."""
    conn = connect(db_path)
    db = DB(conn=conn)
    db.init()
    version = conn.execute("SELECT vec_version()").fetchone()[0]
    logger.info(f"Opened database at {db_path} (sqlite-vec {version})")
    return db
