from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Mapping

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from linkvault.core.bookmark_status import BookmarkStatusService
from linkvault.core.crawler import CrawlerService, FetchRateLimiter
from linkvault.core.embedding_providers import EmbeddingAdapter, supported_types
from linkvault.core.errors import (
    ConfigurationError,
    CrawlError,
    LinkvaultError,
    NoActiveProviderError,
    NotFoundError,
)
from linkvault.core.indexing import IndexEvent, IndexEventType, IndexingService
from linkvault.core.models import ProviderType
from linkvault.core.provider_service import ProviderService
from linkvault.core.search import SearchOptions, SearchService
from linkvault.core.settings import CrawlerSettings, Settings, SettingsStore
from linkvault.core.storage import DB, open_db
from linkvault.core.tags import TagLookup

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the API needs, constructed once at startup."""

    db: DB
    settings_store: SettingsStore
    providers: ProviderService
    tags: TagLookup
    crawler: CrawlerService
    indexing: IndexingService
    search: SearchService
    status: BookmarkStatusService


def build_services(
    settings: Settings,
    db: DB | None = None,
    adapters: Mapping[ProviderType, EmbeddingAdapter] | None = None,
) -> Services:
    db = db or open_db(settings.db_path)
    settings_store = SettingsStore(db)
    providers = ProviderService(db, adapters)
    tags = TagLookup(db)
    return Services(
        db=db,
        settings_store=settings_store,
        providers=providers,
        tags=tags,
        crawler=CrawlerService(db, settings_store, FetchRateLimiter(CrawlerSettings().rate_limit_ms)),
        indexing=IndexingService(db, providers, tags, throttle_ms=settings.index_throttle_ms),
        search=SearchService(db, providers),
        status=BookmarkStatusService(db, providers),
    )


app = FastAPI(title="linkvault")


@app.on_event("startup")
def _startup() -> None:
    s = Settings.from_env()
    logging.basicConfig(
        level=s.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(s)
    logger.info(f"linkvault started (env={s.app_env})")


@app.on_event("shutdown")
async def _shutdown() -> None:
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.crawler.close()
        await services.providers.close()


def _services(request: Request) -> Services:
    return request.app.state.services


@app.exception_handler(LinkvaultError)
async def _linkvault_error(request: Request, exc: LinkvaultError) -> JSONResponse:
    if isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, CrawlError):
        status_code = 502
    elif isinstance(exc, (ConfigurationError, NoActiveProviderError)):
        status_code = 400
    else:
        status_code = 409
    return JSONResponse(status_code=status_code, content={"error": str(exc)})


class ProviderIn(BaseModel):
    id: str
    name: str
    type: ProviderType
    endpoint: str
    model_name: str
    dimensions: int = 0
    document_prefix: str | None = None
    document_suffix: str | None = None
    max_context_tokens: int | None = 512


class CrawlerSettingsIn(BaseModel):
    enabled: bool | None = None
    default_depth: int | None = None
    max_links_per_page: int | None = None
    same_origin_only: bool | None = None
    rate_limit_ms: int | None = None
    respect_robots_txt: bool | None = None
    auto_retry_on_failure: bool | None = None
    max_retries: int | None = None
    use_article_extractor: bool | None = None


@app.get("/health")
def health(request: Request):
    return {"status": "ok", "stats": _services(request).db.get_stats()}


# ==================== Bookmarks ====================


@app.post("/api/bookmarks/{bookmark_id}/crawl")
async def api_crawl_bookmark(request: Request, bookmark_id: str):
    """Crawl a bookmark's page (and related pages, per crawler settings)."""
    services = _services(request)
    bookmark = services.db.get_bookmark(bookmark_id)
    if bookmark is None:
        raise NotFoundError(f'Bookmark "{bookmark_id}" not found')

    content = await services.crawler.crawl_bookmark(bookmark_id, bookmark.url)
    return {
        "content": content.to_dict(),
        "related_pages": [p.to_dict() for p in services.crawler.get_related_pages(bookmark_id)],
    }


@app.get("/api/bookmarks/{bookmark_id}/content")
def api_bookmark_content(request: Request, bookmark_id: str):
    services = _services(request)
    return {
        "content": [c.to_dict() for c in services.crawler.get_bookmark_content(bookmark_id)],
        "related_pages": [p.to_dict() for p in services.crawler.get_related_pages(bookmark_id)],
    }


@app.delete("/api/bookmarks/{bookmark_id}/content")
def api_delete_bookmark_content(request: Request, bookmark_id: str):
    return {"deleted": _services(request).crawler.delete_bookmark_content(bookmark_id)}


@app.get("/api/bookmarks/{bookmark_id}/status")
def api_bookmark_status(request: Request, bookmark_id: str):
    services = _services(request)
    return {
        **services.status.get_bookmark_status(bookmark_id).to_dict(),
        "indexing": services.indexing.get_bookmark_indexing_status(bookmark_id),
    }


# ==================== Indexing ====================


@app.post("/api/index/{bookmark_id}")
async def api_index_bookmark(request: Request, bookmark_id: str):
    result = await _services(request).indexing.index_bookmark(bookmark_id)
    return result.to_dict()


async def index_event_stream(indexing: IndexingService) -> AsyncIterator[str]:
    """Index everything in a background task, yielding SSE events.

    Closing the stream (client disconnect) cancels the run.
    """
    queue: asyncio.Queue[IndexEvent | None] = asyncio.Queue()

    def on_progress(progress) -> None:
        queue.put_nowait(IndexEvent(type=IndexEventType.PROGRESS, data=progress.to_dict()))

    task = asyncio.create_task(indexing.index_all_bookmarks(on_progress))
    task.add_done_callback(lambda _: queue.put_nowait(None))

    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            yield event.to_sse()
    finally:
        if not task.done():
            logger.info("Index stream closed, cancelling indexing run")
            task.cancel()

    try:
        results = task.result()
    except Exception as e:
        logger.exception("Indexing run failed")
        yield IndexEvent(type=IndexEventType.FAILED, data={"error": str(e)}).to_sse()
        return

    failures = [r.to_dict() for r in results if not r.success]
    yield IndexEvent(
        type=IndexEventType.COMPLETED,
        data={
            "total": len(results),
            "succeeded": len(results) - len(failures),
            "failed": len(failures),
            "failures": failures,
        },
    ).to_sse()


@app.post("/api/index")
async def api_index_all(request: Request):
    """SSE stream of progress while every bookmark is indexed."""
    return StreamingResponse(
        index_event_stream(_services(request).indexing),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/api/index/unindexed")
def api_unindexed(request: Request):
    services = _services(request)
    unindexed = services.indexing.get_unindexed_bookmarks()
    stale = services.indexing.get_stale_bookmarks()
    return {
        "count": len(unindexed),
        "bookmarks": [b.to_dict() for b in unindexed],
        "stale": [b.to_dict() for b in stale],
    }


# ==================== Search ====================


@app.get("/api/search")
async def api_search(
    request: Request,
    q: str = "",
    limit: int = 20,
    min_score: float = 0.3,
    provider_id: str | None = None,
):
    """Semantic search, falling back to keyword search.

    mode tells which path answered: "semantic", "text", or "none" when
    nothing matched.
    """
    if not q.strip():
        return JSONResponse(status_code=400, content={"error": "Query is required", "results": []})

    options = SearchOptions(limit=limit, min_score=min_score, provider_id=provider_id)
    results = await _services(request).search.search_with_fallback(q, options)

    if not results:
        mode = "none"
    elif results[0].is_text_search:
        mode = "text"
    else:
        mode = "semantic"
    return {"query": q, "mode": mode, "count": len(results), "results": [r.to_dict() for r in results]}


# ==================== Providers ====================


@app.get("/api/providers")
def api_providers(request: Request):
    return {
        "providers": [p.to_dict() for p in _services(request).providers.list_providers()],
        "supported_types": [t.value for t in supported_types()],
    }


@app.post("/api/providers", status_code=201)
def api_create_provider(request: Request, body: ProviderIn):
    provider = _services(request).providers.create_provider(**body.model_dump())
    return provider.to_dict()


@app.post("/api/providers/{provider_id}/activate")
def api_activate_provider(request: Request, provider_id: str):
    return _services(request).providers.set_active_provider(provider_id).to_dict()


@app.post("/api/providers/{provider_id}/test")
async def api_test_provider(request: Request, provider_id: str):
    result = await _services(request).providers.test_provider_connection(provider_id)
    return result.to_dict()


@app.get("/api/providers/{provider_id}/stats")
def api_provider_stats(request: Request, provider_id: str):
    return _services(request).providers.get_provider_stats(provider_id)


@app.delete("/api/providers/{provider_id}")
def api_delete_provider(request: Request, provider_id: str):
    _services(request).providers.delete_provider(provider_id)
    return {"deleted": provider_id}


# ==================== Settings ====================


@app.get("/api/settings/crawler")
def api_get_crawler_settings(request: Request):
    return _services(request).settings_store.get_crawler_settings().to_dict()


@app.post("/api/settings/crawler")
def api_update_crawler_settings(request: Request, body: CrawlerSettingsIn):
    changes = body.model_dump(exclude_none=True)
    updated = _services(request).settings_store.update_crawler_settings(**changes)
    logger.info(f"Crawler settings updated: {json.dumps(changes)}")
    return updated.to_dict()
