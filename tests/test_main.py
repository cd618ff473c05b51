"""API tests against an in-memory database and a fake embedding adapter."""

import asyncio
import json

import httpx
import pytest
from conftest import make_bookmark
from fastapi.testclient import TestClient

from linkvault.core.crawler import CrawlerService, FetchRateLimiter
from linkvault.core.indexing import IndexingProgress
from linkvault.core.models import EmbeddingRecord, ProviderType
from linkvault.core.settings import Settings
from linkvault.main import app, build_services, index_event_stream

PROVIDER = {
    "id": "local",
    "name": "Local Ollama",
    "type": "ollama",
    "endpoint": "http://localhost:11434",
    "model_name": "nomic-embed-text",
}


@pytest.fixture
def services(db, fake_adapter):
    settings = Settings(app_env="test", db_path=":memory:", log_level="INFO", index_throttle_ms=0)
    return build_services(settings, db=db, adapters={ProviderType.OLLAMA: fake_adapter})


@pytest.fixture
def client(services):
    app.state.services = services
    with TestClient(app) as c:
        yield c
    app.state.services = None


def _parse_sse(body):
    events = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


class TestProvidersApi:
    def test_create_list_activate(self, client):
        r = client.post("/api/providers", json=PROVIDER)
        assert r.status_code == 201
        assert r.json()["is_active"] is True

        client.post("/api/providers", json={**PROVIDER, "id": "second"})
        r = client.post("/api/providers/second/activate")
        assert r.json()["is_active"] is True

        listing = client.get("/api/providers").json()
        assert [p["id"] for p in listing["providers"] if p["is_active"]] == ["second"]
        assert set(listing["supported_types"]) == {"localai", "llamacpp", "ollama"}

    def test_errors_map_to_status_codes(self, client):
        client.post("/api/providers", json=PROVIDER)

        assert client.post("/api/providers", json=PROVIDER).status_code == 400
        assert client.post("/api/providers/nope/activate").status_code == 404
        r = client.delete("/api/providers/local")
        assert r.status_code == 409
        assert "Cannot delete active provider" in r.json()["error"]

    def test_unknown_type_rejected_by_validation(self, client):
        assert client.post("/api/providers", json={**PROVIDER, "type": "openai"}).status_code == 422

    def test_connection_test_and_stats(self, client, fake_adapter):
        client.post("/api/providers", json=PROVIDER)

        r = client.post("/api/providers/local/test")
        assert r.json()["success"] is True
        assert r.json()["dimensions"] == 3

        stats = client.get("/api/providers/local/stats").json()
        assert stats["indexed_bookmarks"] == 0


class TestIndexAndSearchApi:
    def test_index_then_search(self, client, services, fake_adapter):
        client.post("/api/providers", json=PROVIDER)
        services.db.save_bookmark(make_bookmark("b1", "Async IO"))

        r = client.post("/api/index/b1")
        assert r.json()["success"] is True

        r = client.get("/api/search", params={"q": "async"})
        body = r.json()
        assert body["mode"] == "semantic"
        assert body["results"][0]["bookmark"]["id"] == "b1"

    def test_index_all_streams_progress(self, client, services):
        client.post("/api/providers", json=PROVIDER)
        services.db.save_bookmark(make_bookmark("b1", "One"))
        services.db.save_bookmark(make_bookmark("b2", "Two"))

        r = client.post("/api/index")

        assert r.headers["content-type"].startswith("text/event-stream")
        events = _parse_sse(r.text)
        assert [name for name, _ in events] == ["progress", "progress", "completed"]
        assert events[-1][1]["succeeded"] == 2
        assert events[-1][1]["failures"] == []

    def test_unindexed(self, client, services):
        client.post("/api/providers", json=PROVIDER)
        services.db.save_bookmark(make_bookmark("b1", "One"))
        services.db.save_bookmark(make_bookmark("b2", "Two"))
        services.db.save_embedding(EmbeddingRecord("b1", "local", [1.0, 0.0, 0.0], "m"))

        body = client.get("/api/index/unindexed").json()

        assert body["count"] == 1
        assert body["bookmarks"][0]["id"] == "b2"
        assert body["stale"] == []

    def test_search_falls_back_to_text(self, client, services):
        services.db.save_bookmark(make_bookmark("b1", "Rust async runtime"))

        body = client.get("/api/search", params={"q": "rust"}).json()

        assert body["mode"] == "text"
        assert body["results"][0]["provider_id"] == "text-search"

    def test_search_requires_query(self, client):
        r = client.get("/api/search", params={"q": "  "})
        assert r.status_code == 400

    def test_search_with_no_matches(self, client):
        assert client.get("/api/search", params={"q": "zzz"}).json()["mode"] == "none"


class TestCrawlApi:
    @pytest.fixture
    def site(self, services):
        def handler(request):
            if request.url.path == "/ok":
                return httpx.Response(200, text="<title>OK page</title><article>Hello</article>")
            return httpx.Response(404, text="")

        services.crawler = CrawlerService(
            services.db,
            services.settings_store,
            FetchRateLimiter(0),
            transport=httpx.MockTransport(handler),
        )
        services.settings_store.update_crawler_settings(rate_limit_ms=0, auto_retry_on_failure=False)
        return services

    def test_crawl_and_read_content(self, client, site):
        site.db.save_bookmark(make_bookmark("b1", "Ok", url="https://x.com/ok"))

        r = client.post("/api/bookmarks/b1/crawl")
        assert r.status_code == 200
        assert r.json()["content"]["title"] == "OK page"

        content = client.get("/api/bookmarks/b1/content").json()["content"]
        assert [c["text"] for c in content] == ["Hello"]

        status = client.get("/api/bookmarks/b1/status").json()
        assert status["is_crawled"] is True
        assert status["indexing"] == {"is_indexed": False, "providers": []}

        assert client.delete("/api/bookmarks/b1/content").json() == {
            "deleted": {"content": 1, "related_pages": 0}
        }

    def test_primary_failure_is_bad_gateway(self, client, site):
        site.db.save_bookmark(make_bookmark("b1", "Gone", url="https://x.com/gone"))

        r = client.post("/api/bookmarks/b1/crawl")

        assert r.status_code == 502
        assert r.json()["error"] == "HTTP 404: Not Found"

    def test_unknown_bookmark(self, client, site):
        assert client.post("/api/bookmarks/nope/crawl").status_code == 404


class TestCrawlerSettingsApi:
    def test_partial_update(self, client):
        r = client.post("/api/settings/crawler", json={"default_depth": 2})
        assert r.json()["default_depth"] == 2
        assert r.json()["max_retries"] == 3
        assert client.get("/api/settings/crawler").json()["default_depth"] == 2

    def test_invalid_value(self, client):
        assert client.post("/api/settings/crawler", json={"max_retries": -1}).status_code == 400


class HangingIndexing:
    """Reports one bookmark, then never finishes."""

    def __init__(self):
        self.task = None

    async def index_all_bookmarks(self, on_progress):
        self.task = asyncio.current_task()
        on_progress(IndexingProgress(total=2, current=1, succeeded=1))
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_closing_index_stream_cancels_the_run():
    indexing = HangingIndexing()
    stream = index_event_stream(indexing)

    first = await stream.__anext__()
    await stream.aclose()

    assert first.startswith("event: progress")
    with pytest.raises(asyncio.CancelledError):
        await indexing.task
    assert indexing.task.cancelled()


def test_shutdown_closes_adapter_clients(services, fake_adapter):
    app.state.services = services
    with TestClient(app):
        pass
    app.state.services = None

    assert fake_adapter.closed is True
