"""Crawler: fetches a bookmark's page (and optionally a few linked pages).

Primary content is always stored, even when the fetch failed, so the UI can
show the error. Related pages are best effort: failures are logged and the
crawl continues.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable
from urllib.parse import urljoin, urlsplit
from urllib.robotparser import RobotFileParser

import httpx
import trafilatura
from bs4 import BeautifulSoup, Tag as HtmlTag

from linkvault.core.errors import CrawlError
from linkvault.core.models import Content, ContentRole, RelatedPage
from linkvault.core.settings import CrawlerSettings, SettingsStore
from linkvault.core.storage import DB

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; LinkVaultBot/1.0)"
ROBOTS_AGENT = "LinkVaultBot"
FETCH_TIMEOUT = 30.0

# Article extractor output shorter than this falls back to the selector chain
MIN_ARTICLE_LENGTH = 300

ERROR_TITLE = "Failed to fetch"

NOISE_SELECTORS = [
    "script",
    "style",
    "noscript",
    "svg",
    "canvas",
    "nav",
    "header",
    "footer",
    "aside",
    ".navigation",
    ".nav",
    ".menu",
    ".sidebar",
    ".footer",
    ".header",
    ".ad",
    ".ads",
    ".advertisement",
    '[role="navigation"]',
    '[role="banner"]',
    '[role="complementary"]',
]

EXCLUDED_PATH_SEGMENTS = {
    "login",
    "signin",
    "signup",
    "register",
    "logout",
    "account",
    "settings",
    "profile",
    "admin",
    "cart",
    "checkout",
}

_DEFAULT_PORTS = {"http": 80, "https": 443}
_WHITESPACE_RE = re.compile(r"\s+")


class FetchErrorType(str, Enum):
    """Classification of fetch errors for retry strategy."""

    TIMEOUT = "timeout"  # Retriable
    HTTP_4XX = "http_4xx"  # Not retriable
    HTTP_5XX = "http_5xx"  # Retriable
    CONNECTION_ERROR = "connection_error"  # Retriable
    NO_CONTENT = "no_content"


RETRIABLE_ERRORS = {FetchErrorType.TIMEOUT, FetchErrorType.HTTP_5XX, FetchErrorType.CONNECTION_ERROR}


@dataclass
class FetchResult:
    """Result of a single HTTP fetch."""

    success: bool
    html: str | None = None
    error_type: FetchErrorType | None = None
    error_message: str | None = None
    http_status: int | None = None

    @property
    def retriable(self) -> bool:
        return self.error_type in RETRIABLE_ERRORS if self.error_type else False


@dataclass
class ExtractedPage:
    title: str
    description: str | None
    text: str
    links: list[str]
    used_article_extractor: bool = False


class FetchRateLimiter:
    """Spaces the start of consecutive fetches by at least rate_limit_ms.

    One gate for all hosts. The next free slot is reserved under the lock
    before sleeping, so concurrent callers queue up instead of racing.
    """

    def __init__(self, rate_limit_ms: int = 200, clock: Callable[[], float] = time.monotonic) -> None:
        self.rate_limit_ms = rate_limit_ms
        self._clock = clock
        self._last_slot: float | None = None
        self._lock = threading.Lock()

    async def wait(self) -> float:
        """Wait for the next slot. Returns the seconds slept."""
        with self._lock:
            now = self._clock()
            if self._last_slot is None:
                slot = now
            else:
                slot = max(now, self._last_slot + self.rate_limit_ms / 1000)
            self._last_slot = slot

        wait_time = slot - now
        if wait_time > 0:
            logger.debug(f"Rate limit: waiting {wait_time:.3f}s")
            await asyncio.sleep(wait_time)
        return wait_time


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def clean_text(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def _origin(url: str) -> tuple[str, str, int | None]:
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    return scheme, (parts.hostname or "").lower(), parts.port or _DEFAULT_PORTS.get(scheme)


def _meta_content(soup: BeautifulSoup, **attrs: str) -> str | None:
    tag = soup.find("meta", attrs=attrs)
    if tag is None:
        return None
    value = (tag.get("content") or "").strip()
    return value or None


def extract_title(soup: BeautifulSoup) -> str:
    for tag in (soup.find("title"), soup.find("h1")):
        if tag is not None:
            text = tag.get_text().strip()
            if text:
                return text
    return _meta_content(soup, property="og:title") or "Untitled"


def extract_description(soup: BeautifulSoup) -> str | None:
    return _meta_content(soup, name="description") or _meta_content(soup, property="og:description")


def _strip_noise(element: HtmlTag) -> str:
    clone = copy.copy(element)
    for selector in NOISE_SELECTORS:
        for node in clone.select(selector):
            node.decompose()
    return clone.get_text()


def extract_text(soup: BeautifulSoup) -> str:
    """Body text from the most specific content container available."""
    element = (
        soup.find("article")
        or soup.find("main")
        or soup.select_one(".content, #content, .post, .article")
        or soup.body
    )
    if element is None:
        return ""
    return clean_text(_strip_noise(element))


def extract_links(soup: BeautifulSoup, base_url: str) -> list[str]:
    """Absolute http(s) links in document order, without duplicates."""
    links: dict[str, None] = {}
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href:
            continue
        try:
            absolute = urljoin(base_url, href)
        except ValueError:
            continue
        if absolute.startswith(("http://", "https://")):
            links.setdefault(absolute, None)
    return list(links)


def filter_links(links: list[str], base_url: str, same_origin_only: bool) -> list[str]:
    """Drop links that are not worth following from base_url."""
    base_origin = _origin(base_url)
    base_document = base_url.split("#")[0]
    kept = []
    for link in links:
        if link == base_url:
            continue
        try:
            parts = urlsplit(link)
            origin = _origin(link)
        except ValueError:
            continue
        if parts.fragment and link.split("#")[0] == base_document:
            continue
        if same_origin_only and origin != base_origin:
            continue
        segments = parts.path.lower().split("/")
        if any(segment in EXCLUDED_PATH_SEGMENTS for segment in segments):
            continue
        kept.append(link)
    return kept


def extract_page(html: str, url: str) -> ExtractedPage:
    soup = BeautifulSoup(html, "html.parser")
    return ExtractedPage(
        title=extract_title(soup),
        description=extract_description(soup),
        text=extract_text(soup),
        links=extract_links(soup, url),
    )


class CrawlerService:
    """Fetches, extracts and stores content for bookmarks."""

    def __init__(
        self,
        db: DB,
        settings_store: SettingsStore,
        limiter: FetchRateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._db = db
        self._settings_store = settings_store
        self._limiter = limiter or FetchRateLimiter()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._robots: dict[tuple[str, str, int | None], RobotFileParser | None] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(FETCH_TIMEOUT),
                follow_redirects=True,
                headers={
                    "User-Agent": USER_AGENT,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    # ==================== Crawl ====================

    async def crawl_bookmark(self, bookmark_id: str, url: str) -> Content:
        """Crawl a bookmark's page and, if configured, related pages.

        Returns:
            The stored primary Content.

        Raises:
            CrawlError: If the primary page could not be fetched. The error
                content is stored before raising.
        """
        settings = self._settings_store.get_crawler_settings()
        self._limiter.rate_limit_ms = settings.rate_limit_ms
        logger.info(f"Crawling bookmark {bookmark_id}: {url} (depth={settings.default_depth})")

        primary = await self._fetch_content(url, bookmark_id, ContentRole.PRIMARY, settings)
        self._db.save_content(primary)

        if primary.fetch_error:
            logger.error(f"Failed to fetch primary content for {bookmark_id}: {primary.fetch_error}")
            raise CrawlError(primary.fetch_error, url)

        logger.info(
            f"Primary content stored for {bookmark_id}: {len(primary.text)} chars, {len(primary.links)} links"
        )

        if settings.default_depth > 0 and primary.links:
            await self._crawl_related_pages(bookmark_id, url, primary.links, settings)

        return primary

    async def _crawl_related_pages(
        self,
        bookmark_id: str,
        base_url: str,
        links: list[str],
        settings: CrawlerSettings,
    ) -> None:
        candidates = filter_links(links, base_url, settings.same_origin_only)
        followed = 0

        for link in candidates:
            if followed >= settings.default_depth:
                break
            try:
                if settings.respect_robots_txt and not await self._robots_allowed(link):
                    logger.info(f"robots.txt disallows {link}, skipping")
                    continue
                followed += 1

                related = await self._fetch_content(link, bookmark_id, ContentRole.RELATED, settings)
                self._db.save_content(related)

                if related.fetch_error:
                    logger.warning(f"Skipping related page {link}: {related.fetch_error}")
                    continue

                self._db.save_related_page(
                    RelatedPage(
                        id=uuid.uuid4().hex,
                        bookmark_id=bookmark_id,
                        url=link,
                        depth=1,
                        title=related.title,
                    )
                )
            except Exception as e:
                logger.warning(f"Failed to crawl related page {link}: {e}")

        logger.info(f"Crawled {followed} related pages for {bookmark_id}")

    async def _fetch_content(
        self,
        url: str,
        bookmark_id: str,
        role: ContentRole,
        settings: CrawlerSettings,
    ) -> Content:
        result = await self._fetch_with_retry(url, settings)
        if not result.success:
            return self._error_content(bookmark_id, url, role, result.error_message or "Unknown error")

        page = await self._extract(result.html or "", url, settings)
        return Content(
            bookmark_id=bookmark_id,
            url=url,
            role=role,
            title=page.title,
            description=page.description,
            text=page.text,
            content_hash=content_hash(page.text),
            links=page.links,
        )

    @staticmethod
    def _error_content(bookmark_id: str, url: str, role: ContentRole, message: str) -> Content:
        return Content(
            bookmark_id=bookmark_id,
            url=url,
            role=role,
            title=ERROR_TITLE,
            text="",
            content_hash=content_hash(""),
            links=[],
            fetch_error=message,
        )

    # ==================== Fetch ====================

    async def _fetch_with_retry(self, url: str, settings: CrawlerSettings) -> FetchResult:
        attempts = 1 + (settings.max_retries if settings.auto_retry_on_failure else 0)
        result = FetchResult(success=False)
        for attempt in range(attempts):
            await self._limiter.wait()
            result = await self.fetch(url)
            if result.success or not result.retriable:
                return result
            if attempt + 1 < attempts:
                logger.warning(
                    f"Fetch failed for {url} ({result.error_message}), attempt {attempt + 1}/{attempts}. Retrying..."
                )
        return result

    async def fetch(self, url: str) -> FetchResult:
        """GET a page. Never raises; failures are classified in the result."""
        try:
            client = await self._get_client()
            response = await client.get(url)

            if response.status_code >= 500:
                return FetchResult(
                    success=False,
                    error_type=FetchErrorType.HTTP_5XX,
                    error_message=f"HTTP {response.status_code}: {response.reason_phrase}",
                    http_status=response.status_code,
                )

            if response.status_code >= 400:
                return FetchResult(
                    success=False,
                    error_type=FetchErrorType.HTTP_4XX,
                    error_message=f"HTTP {response.status_code}: {response.reason_phrase}",
                    http_status=response.status_code,
                )

            html = response.text
            if not html:
                return FetchResult(
                    success=False,
                    error_type=FetchErrorType.NO_CONTENT,
                    error_message="No content received from server",
                    http_status=response.status_code,
                )

            return FetchResult(success=True, html=html, http_status=response.status_code)

        except httpx.TimeoutException:
            return FetchResult(
                success=False,
                error_type=FetchErrorType.TIMEOUT,
                error_message=f"Request timed out after {FETCH_TIMEOUT}s",
            )

        except httpx.TransportError as e:
            return FetchResult(
                success=False,
                error_type=FetchErrorType.CONNECTION_ERROR,
                error_message=f"Network error: {e}",
            )

    async def _extract(self, html: str, url: str, settings: CrawlerSettings) -> ExtractedPage:
        page = extract_page(html, url)
        if not settings.use_article_extractor:
            return page

        # trafilatura is CPU-bound
        article = await asyncio.get_running_loop().run_in_executor(
            None,
            lambda: trafilatura.extract(
                html,
                include_comments=False,
                include_tables=True,
                favor_recall=True,
            ),
        )
        if article and len(article) > MIN_ARTICLE_LENGTH:
            logger.debug(f"Article extractor produced {len(article)} chars for {url}")
            page.text = clean_text(article)
            page.used_article_extractor = True
        return page

    # ==================== robots.txt ====================

    async def _robots_allowed(self, url: str) -> bool:
        origin = _origin(url)
        if origin not in self._robots:
            self._robots[origin] = await self._load_robots(url)
        parser = self._robots[origin]
        return parser is None or parser.can_fetch(ROBOTS_AGENT, url)

    async def _load_robots(self, url: str) -> RobotFileParser | None:
        """Fetch and parse robots.txt. None means no restrictions apply."""
        parts = urlsplit(url)
        robots_url = f"{parts.scheme}://{parts.netloc}/robots.txt"
        await self._limiter.wait()
        try:
            client = await self._get_client()
            response = await client.get(robots_url)
        except httpx.HTTPError as e:
            logger.warning(f"Could not check robots.txt for {url}: {e}")
            return None

        if not response.is_success:
            return None

        parser = RobotFileParser(robots_url)
        parser.parse(response.text.splitlines())
        return parser

    # ==================== Stored content ====================

    def get_bookmark_content(self, bookmark_id: str) -> list[Content]:
        return self._db.get_content_for_bookmark(bookmark_id)

    def get_related_pages(self, bookmark_id: str) -> list[RelatedPage]:
        return self._db.get_related_pages(bookmark_id)

    def delete_bookmark_content(self, bookmark_id: str) -> dict[str, int]:
        deleted = self._db.delete_content_for_bookmark(bookmark_id)
        logger.info(f"Deleted content for {bookmark_id}: {deleted}")
        return deleted
