"""Shared fixtures: in-memory database with sqlite-vec, fake embedding adapter."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from linkvault.core.embedding_providers import EmbeddingResult, ProviderTestResult
from linkvault.core.models import Bookmark, ProviderType
from linkvault.core.provider_service import ProviderService
from linkvault.core.storage import open_db


class FakeAdapter:
    """Returns canned vectors keyed by input text; records every call."""

    def __init__(self, provider_type: ProviderType = ProviderType.OLLAMA, default: list[float] | None = None):
        self.type = provider_type
        self.vectors: dict[str, list[float]] = {}
        self.default = default or [1.0, 0.0, 0.0]
        self.calls: list[dict] = []
        self.error: Exception | None = None
        self.closed = False

    async def generate_embedding(self, text, endpoint, model, prefix=None, suffix=None):
        self.calls.append({"text": text, "endpoint": endpoint, "model": model, "prefix": prefix, "suffix": suffix})
        if self.error is not None:
            raise self.error
        vector = self.vectors.get(text, self.default)
        return EmbeddingResult(embedding=list(vector), dimensions=len(vector))

    async def test_connection(self, endpoint, model, prefix=None, suffix=None):
        try:
            result = await self.generate_embedding("test connection", endpoint, model, prefix, suffix)
        except Exception as e:
            return ProviderTestResult(success=False, error=str(e))
        return ProviderTestResult(success=True, dimensions=result.dimensions, latency_ms=1)

    async def close(self):
        self.closed = True


@pytest.fixture
def db():
    database = open_db(":memory:")
    yield database
    database.conn.close()


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def providers(db, fake_adapter):
    return ProviderService(db, adapters={ProviderType.OLLAMA: fake_adapter})


@pytest.fixture
def active_provider(providers):
    return providers.create_provider(
        id="local",
        name="Local Ollama",
        type=ProviderType.OLLAMA,
        endpoint="http://localhost:11434",
        model_name="nomic-embed-text",
    )


def make_bookmark(bookmark_id: str, title: str, **kwargs) -> Bookmark:
    kwargs.setdefault("url", f"https://example.com/{bookmark_id}")
    kwargs.setdefault("date_added", datetime(2024, 1, 1, tzinfo=timezone.utc))
    kwargs.setdefault("last_modified", datetime(2024, 1, 1, tzinfo=timezone.utc))
    return Bookmark(id=bookmark_id, title=title, **kwargs)
