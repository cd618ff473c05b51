"""Semantic search over stored embeddings, with a lexical fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from linkvault.core.content_preparation import ContentPreparationService
from linkvault.core.models import TEXT_SEARCH_PROVIDER_ID, Bookmark, SearchResult
from linkvault.core.provider_service import ProviderService
from linkvault.core.storage import DB
from linkvault.core.vector_math import cosine_similarity

logger = logging.getLogger(__name__)

# Lexical points per matched term
TITLE_POINTS = 3
DESCRIPTION_POINTS = 2
OTHER_POINTS = 1
TEXT_SCORE_DIVISOR = 10


@dataclass
class SearchOptions:
    limit: int = 20
    min_score: float = 0.3
    provider_id: str | None = None


class SearchService:
    """Ranks bookmarks by cosine similarity to the query embedding.

    The scan is a brute-force pass over every vector stored for the
    provider.
    """

    def __init__(
        self,
        db: DB,
        providers: ProviderService,
        content_prep: ContentPreparationService | None = None,
    ) -> None:
        self._db = db
        self._providers = providers
        self._content_prep = content_prep or ContentPreparationService()

    async def search(self, query: str, options: SearchOptions | None = None) -> list[SearchResult]:
        """Semantic search.

        Raises:
            NotFoundError: options.provider_id names an unknown provider.
            NoActiveProviderError: No provider given and none is active.
            EmbeddingError: The provider failed to embed the query.
        """
        opts = options or SearchOptions()
        if opts.provider_id:
            provider = self._providers.require_provider(opts.provider_id)
        else:
            provider = self._providers.require_active_provider()

        prepared = self._content_prep.prepare_query_for_embedding(query)
        adapter = self._providers.get_adapter(provider.type)
        query_result = await adapter.generate_embedding(
            prepared,
            provider.endpoint,
            provider.model_name,
            provider.document_prefix,
            provider.document_suffix,
        )
        query_vector = query_result.embedding

        results: list[SearchResult] = []
        skipped = 0
        for record in self._db.iter_embeddings_for_provider(provider.id):
            if record.dimensions != len(query_vector):
                skipped += 1
                continue

            score = cosine_similarity(query_vector, record.vector)
            if score < opts.min_score:
                continue

            bookmark = self._db.get_bookmark(record.bookmark_id)
            if bookmark and not bookmark.hidden:
                results.append(SearchResult(bookmark=bookmark, score=score, provider_id=provider.id))

        if skipped:
            logger.warning(
                f"Skipped {skipped} embeddings of provider {provider.id} "
                f"with dimensions other than {len(query_vector)}; re-index to include them"
            )

        results.sort(key=lambda r: r.score, reverse=True)
        return results[: opts.limit]

    async def search_with_fallback(self, query: str, options: SearchOptions | None = None) -> list[SearchResult]:
        """Semantic search, or lexical search if anything about it fails."""
        opts = options or SearchOptions()
        try:
            return await self.search(query, opts)
        except Exception as e:
            logger.warning(f"Semantic search failed, falling back to text search: {e}")
            return self.text_search(query, opts.limit)

    def text_search(self, query: str, limit: int = 20) -> list[SearchResult]:
        """Keyword match over title, URL, description and AI summary.

        Scores are raw points / 10 and can exceed 1.0 for long queries.
        """
        terms = query.lower().split()
        results: list[SearchResult] = []

        for bookmark in self._db.list_bookmarks():
            if bookmark.hidden:
                continue
            score = _text_score(bookmark, terms)
            if score > 0:
                results.append(
                    SearchResult(
                        bookmark=bookmark,
                        score=score / TEXT_SCORE_DIVISOR,
                        provider_id=TEXT_SEARCH_PROVIDER_ID,
                    )
                )

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]


def _text_score(bookmark: Bookmark, terms: list[str]) -> int:
    title = bookmark.title.lower()
    description = (bookmark.user_description or "").lower()
    searchable = " ".join(
        [bookmark.title, bookmark.url, bookmark.user_description or "", bookmark.ai_summary or ""]
    ).lower()

    score = 0
    for term in terms:
        if term not in searchable:
            continue
        if term in title:
            score += TITLE_POINTS
        elif term in description:
            score += DESCRIPTION_POINTS
        else:
            score += OTHER_POINTS
    return score
