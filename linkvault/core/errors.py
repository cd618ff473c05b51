"""Domain errors shared by the LinkVault services."""

from __future__ import annotations


class LinkvaultError(Exception):
    """Base exception for LinkVault domain errors."""


class NotFoundError(LinkvaultError):
    """A referenced bookmark, provider or tag does not exist."""


class NoActiveProviderError(LinkvaultError):
    """Indexing or search was attempted without an active embedding provider."""

    def __init__(self, message: str = "No active embedding provider configured") -> None:
        super().__init__(message)


class ConfigurationError(LinkvaultError):
    """Settings or provider configuration is malformed."""


class CrawlError(LinkvaultError):
    """The primary page of a bookmark could not be fetched."""

    def __init__(self, message: str, url: str) -> None:
        super().__init__(message)
        self.url = url
