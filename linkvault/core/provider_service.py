"""Embedding provider configuration: CRUD, activation and connection tests."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Mapping

from linkvault.core.embedding_providers import (
    ADAPTERS,
    EmbeddingAdapter,
    ProviderTestResult,
    get_adapter,
)
from linkvault.core.errors import ConfigurationError, LinkvaultError, NoActiveProviderError, NotFoundError
from linkvault.core.models import EmbeddingProviderConfig, ProviderType, utcnow
from linkvault.core.storage import DB

logger = logging.getLogger(__name__)

# Fields callers may change through update_provider
UPDATABLE_FIELDS = {
    "name",
    "type",
    "endpoint",
    "model_name",
    "dimensions",
    "document_prefix",
    "document_suffix",
    "max_context_tokens",
}


class ProviderService:
    """Owns the embedding_providers table and the adapter lookup."""

    def __init__(self, db: DB, adapters: Mapping[ProviderType, EmbeddingAdapter] | None = None) -> None:
        self._db = db
        self._adapters = adapters if adapters is not None else ADAPTERS

    def get_adapter(self, provider_type: ProviderType | str) -> EmbeddingAdapter:
        """Adapter for a provider type.

        Raises:
            ConfigurationError: If no adapter is registered for the type.
        """
        return get_adapter(provider_type, self._adapters)

    async def close(self) -> None:
        """Close every adapter's HTTP client."""
        for adapter in self._adapters.values():
            await adapter.close()

    # ==================== Lookup ====================

    def list_providers(self) -> list[EmbeddingProviderConfig]:
        return self._db.list_providers()

    def get_provider(self, provider_id: str) -> EmbeddingProviderConfig | None:
        return self._db.get_provider(provider_id)

    def require_provider(self, provider_id: str) -> EmbeddingProviderConfig:
        provider = self._db.get_provider(provider_id)
        if provider is None:
            raise NotFoundError(f'Provider with ID "{provider_id}" not found')
        return provider

    def get_active_provider(self) -> EmbeddingProviderConfig | None:
        return self._db.get_active_provider()

    def require_active_provider(self) -> EmbeddingProviderConfig:
        provider = self._db.get_active_provider()
        if provider is None:
            raise NoActiveProviderError()
        return provider

    # ==================== Mutations ====================

    def create_provider(
        self,
        id: str,
        name: str,
        type: ProviderType | str,
        endpoint: str,
        model_name: str,
        dimensions: int = 0,
        document_prefix: str | None = None,
        document_suffix: str | None = None,
        max_context_tokens: int | None = 512,
    ) -> EmbeddingProviderConfig:
        """Register a provider. The first provider ever created becomes active."""
        if self._db.get_provider(id):
            raise ConfigurationError(f'Provider with ID "{id}" already exists')

        provider = EmbeddingProviderConfig(
            id=id,
            name=name,
            type=self._check_type(type),
            endpoint=self._check_endpoint(endpoint),
            model_name=model_name,
            dimensions=dimensions,
            document_prefix=document_prefix,
            document_suffix=document_suffix,
            max_context_tokens=max_context_tokens,
            is_active=self._db.get_active_provider() is None,
        )
        self._db.insert_provider(provider)
        logger.info(f"Created provider {id} ({provider.type.value}, active={provider.is_active})")
        return provider

    def update_provider(self, provider_id: str, **updates: Any) -> EmbeddingProviderConfig:
        provider = self.require_provider(provider_id)

        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ConfigurationError(f"Cannot update provider fields: {sorted(unknown)}")
        if "type" in updates:
            updates["type"] = self._check_type(updates["type"])
        if "endpoint" in updates:
            updates["endpoint"] = self._check_endpoint(updates["endpoint"])

        updated = replace(provider, **updates)
        self._db.update_provider(updated)
        return updated

    def delete_provider(self, provider_id: str) -> None:
        provider = self.require_provider(provider_id)
        if provider.is_active:
            raise LinkvaultError("Cannot delete active provider. Please activate another provider first.")
        self._db.delete_provider(provider_id)
        logger.info(f"Deleted provider {provider_id}")

    def set_active_provider(self, provider_id: str) -> EmbeddingProviderConfig:
        """Make this the only active provider (single transaction)."""
        self.require_provider(provider_id)
        self._db.set_active_provider(provider_id, utcnow())
        logger.info(f"Active provider is now {provider_id}")
        return self.require_provider(provider_id)

    def record_usage(self, provider_id: str, dimensions: int | None = None) -> None:
        self._db.touch_provider(provider_id, utcnow(), dimensions)

    # ==================== Connection tests ====================

    async def test_connection(
        self,
        provider_type: ProviderType | str,
        endpoint: str,
        model: str,
        prefix: str | None = None,
        suffix: str | None = None,
    ) -> ProviderTestResult:
        adapter = self.get_adapter(provider_type)
        return await adapter.test_connection(endpoint, model, prefix, suffix)

    async def test_provider_connection(self, provider_id: str) -> ProviderTestResult:
        """Probe a stored provider and persist the outcome."""
        provider = self.require_provider(provider_id)
        result = await self.test_connection(
            provider.type,
            provider.endpoint,
            provider.model_name,
            provider.document_prefix,
            provider.document_suffix,
        )

        updated = replace(provider, is_connected=result.success, last_tested_at=utcnow())
        if result.success and result.dimensions:
            updated.dimensions = result.dimensions
        self._db.update_provider(updated)

        if not result.success:
            logger.warning(f"Provider {provider_id} connection test failed: {result.error}")
        return result

    def get_provider_stats(self, provider_id: str) -> dict[str, Any]:
        self.require_provider(provider_id)
        return {
            "total_bookmarks": len(self._db.list_bookmarks()),
            "indexed_bookmarks": self._db.count_embeddings(provider_id),
            "dimensions": self._db.get_embedding_dimensions(provider_id),
        }

    # ==================== Validation ====================

    def _check_type(self, provider_type: ProviderType | str) -> ProviderType:
        self.get_adapter(provider_type)
        return ProviderType(provider_type)

    @staticmethod
    def _check_endpoint(endpoint: str) -> str:
        endpoint = (endpoint or "").strip()
        if not endpoint.startswith(("http://", "https://")):
            raise ConfigurationError(f"Provider endpoint must be an http(s) URL, got {endpoint!r}")
        return endpoint
