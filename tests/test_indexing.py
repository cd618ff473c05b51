"""Tests for indexing.py"""

import json
from datetime import datetime, timedelta, timezone

import pytest
from conftest import make_bookmark

from linkvault.core.embedding_providers import EmbeddingTimeoutError
from linkvault.core.indexing import IndexEvent, IndexEventType, IndexingProgress, IndexingService
from linkvault.core.models import EmbeddingRecord
from linkvault.core.tags import TagLookup


@pytest.fixture
def tags(db):
    return TagLookup(db)


@pytest.fixture
def indexing(db, providers, tags):
    return IndexingService(db, providers, tags, throttle_ms=0)


class TestIndexBookmark:
    @pytest.mark.asyncio
    async def test_stores_embedding_with_tags_and_affixes(
        self, db, providers, tags, indexing, active_provider, fake_adapter
    ):
        providers.update_provider("local", document_prefix="search_document: ")
        db.save_bookmark(make_bookmark("b1", "Async IO"))
        tags.assign_tag("b1", tags.create_tag("python").id)
        fake_adapter.default = [0.1, 0.2, 0.3, 0.4]

        result = await indexing.index_bookmark("b1")

        assert result.success is True
        assert result.provider_id == "local"
        assert result.is_truncated is False
        call = fake_adapter.calls[0]
        assert call["text"] == "Async IO\n\nTagged with: python"
        assert call["prefix"] == "search_document: "
        assert call["model"] == "nomic-embed-text"

        record = db.get_embedding("b1", "local")
        assert record.vector == pytest.approx([0.1, 0.2, 0.3, 0.4])
        assert providers.get_provider("local").dimensions == 4
        assert providers.get_provider("local").last_used_at is not None

    @pytest.mark.asyncio
    async def test_reindex_replaces_previous_vector(self, db, indexing, active_provider, fake_adapter):
        db.save_bookmark(make_bookmark("b1", "Title"))
        fake_adapter.default = [1.0, 0.0]
        await indexing.index_bookmark("b1")

        fake_adapter.default = [0.0, 1.0]
        await indexing.index_bookmark("b1")

        records = db.get_embeddings_for_bookmark("b1")
        assert len(records) == 1
        assert records[0].vector == [0.0, 1.0]

    @pytest.mark.asyncio
    async def test_no_active_provider(self, db, indexing):
        db.save_bookmark(make_bookmark("b1", "Title"))

        result = await indexing.index_bookmark("b1")

        assert result.success is False
        assert result.error == "No active embedding provider configured"

    @pytest.mark.asyncio
    async def test_missing_bookmark(self, indexing, active_provider):
        result = await indexing.index_bookmark("nope")
        assert result.success is False
        assert result.error == "Bookmark not found"

    @pytest.mark.asyncio
    async def test_provider_error_is_reported_not_raised(self, db, indexing, active_provider, fake_adapter):
        db.save_bookmark(make_bookmark("b1", "Title"))
        fake_adapter.error = EmbeddingTimeoutError("ollama")

        result = await indexing.index_bookmark("b1")

        assert result.success is False
        assert result.error == "Request timed out"
        assert db.get_embedding("b1", "local") is None

    @pytest.mark.asyncio
    async def test_long_text_is_truncated(self, db, providers, indexing, active_provider, fake_adapter):
        providers.update_provider("local", max_context_tokens=5)
        db.save_bookmark(make_bookmark("b1", "word " * 40))

        result = await indexing.index_bookmark("b1")

        assert result.is_truncated is True
        assert len(fake_adapter.calls[0]["text"]) <= 20
        assert db.get_embedding("b1", "local").is_truncated is True


class TestIndexAll:
    @pytest.mark.asyncio
    async def test_progress_reported_per_bookmark(self, db, indexing, active_provider, fake_adapter):
        for bookmark_id in ("b1", "b2", "b3"):
            db.save_bookmark(make_bookmark(bookmark_id, bookmark_id.upper()))

        snapshots = []
        results = await indexing.index_all_bookmarks(lambda p: snapshots.append(p.to_dict()))

        assert [r.bookmark_id for r in results] == ["b1", "b2", "b3"]
        assert [s["current"] for s in snapshots] == [1, 2, 3]
        assert snapshots[-1]["total"] == 3
        assert snapshots[-1]["succeeded"] == 3

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_the_run(self, db, indexing, active_provider, fake_adapter):
        db.save_bookmark(make_bookmark("b1", "One"))
        db.save_bookmark(make_bookmark("b2", "Two"))
        fake_adapter.error = EmbeddingTimeoutError("ollama")

        results = await indexing.index_all_bookmarks()

        assert len(results) == 2
        assert not any(r.success for r in results)


class TestStatusQueries:
    def test_unindexed_and_stale(self, db, indexing, active_provider):
        db.save_bookmark(make_bookmark("fresh", "Fresh"))
        db.save_bookmark(make_bookmark("missing", "Missing"))
        edited = make_bookmark("edited", "Edited", last_modified=datetime(2024, 6, 1, tzinfo=timezone.utc))
        db.save_bookmark(edited)

        db.save_embedding(EmbeddingRecord("fresh", "local", [1.0], "m"))
        db.save_embedding(
            EmbeddingRecord(
                "edited",
                "local",
                [1.0],
                "m",
                created_at=edited.last_modified - timedelta(days=1),
            )
        )

        assert [b.id for b in indexing.get_unindexed_bookmarks()] == ["missing"]
        assert [b.id for b in indexing.get_stale_bookmarks()] == ["edited"]

    def test_naive_timestamps_are_treated_as_utc(self, db, indexing, active_provider):
        edited = make_bookmark("edited", "Edited", last_modified=datetime(2030, 1, 1))
        db.save_bookmark(edited)
        db.save_embedding(EmbeddingRecord("edited", "local", [1.0], "m", created_at=datetime(2029, 1, 1)))

        assert [b.id for b in indexing.get_stale_bookmarks()] == ["edited"]
        assert db.get_bookmark("edited").last_modified == datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert db.get_embedding("edited", "local").is_stale(edited) is True

    def test_no_active_provider_means_nothing_listed(self, db, indexing):
        db.save_bookmark(make_bookmark("b1", "Title"))
        assert indexing.get_unindexed_bookmarks() == []
        assert indexing.is_bookmark_indexed("b1") is False

    def test_indexed_per_provider(self, db, indexing, active_provider):
        db.save_embedding(EmbeddingRecord("b1", "local", [1.0], "m"))
        db.save_embedding(EmbeddingRecord("b1", "other", [1.0], "m"))

        assert indexing.is_bookmark_indexed("b1") is True
        assert indexing.is_bookmark_indexed("b1", "unknown") is False
        status = indexing.get_bookmark_indexing_status("b1")
        assert status["is_indexed"] is True
        assert sorted(status["providers"]) == ["local", "other"]
        assert indexing.delete_bookmark_embeddings("b1") == 2


def test_index_event_to_sse():
    event = IndexEvent(
        type=IndexEventType.PROGRESS,
        data=IndexingProgress(total=2, current=1, succeeded=1).to_dict(),
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )

    sse = event.to_sse()

    assert sse.startswith("event: progress\ndata: ")
    assert sse.endswith("\n\n")
    payload = json.loads(sse.split("data: ", 1)[1])
    assert payload["type"] == "progress"
    assert payload["current"] == 1
    assert payload["timestamp"] == "2024-01-01T00:00:00+00:00"
