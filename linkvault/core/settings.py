from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from typing import TYPE_CHECKING, Any

from linkvault.core.errors import ConfigurationError

if TYPE_CHECKING:
    from linkvault.core.storage import DB

logger = logging.getLogger(__name__)

CRAWLER_SETTINGS_KEY = "crawler_settings"


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    log_level: str
    index_throttle_ms: int

    @staticmethod
    def from_env() -> "Settings":
        def _i(name: str, default: str) -> int:
            raw = os.getenv(name, default).strip()
            try:
                return int(raw)
            except ValueError as e:
                raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "_local/data/linkvault.db").strip(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            index_throttle_ms=_i("INDEX_THROTTLE_MS", "200"),
        )


@dataclass(frozen=True)
class CrawlerSettings:
    """Crawler behaviour, read at the start of every crawl."""

    enabled: bool = False
    default_depth: int = 0
    max_links_per_page: int = 10
    same_origin_only: bool = True
    rate_limit_ms: int = 200
    respect_robots_txt: bool = True
    auto_retry_on_failure: bool = True
    max_retries: int = 3
    use_article_extractor: bool = False

    def validate(self) -> "CrawlerSettings":
        for name in ("default_depth", "max_links_per_page", "rate_limit_ms", "max_retries"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ConfigurationError(f"crawler.{name} must be a non-negative integer, got {value!r}")
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CrawlerSettings":
        """Merge stored values over the defaults, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown crawler settings: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known}).validate()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SettingsStore:
    """Reads and writes crawler settings in the app_settings table."""

    def __init__(self, db: "DB") -> None:
        self._db = db

    def get_crawler_settings(self) -> CrawlerSettings:
        raw = self._db.get_setting(CRAWLER_SETTINGS_KEY)
        if raw is None:
            return CrawlerSettings()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Stored crawler settings are not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError("Stored crawler settings must be a JSON object")
        return CrawlerSettings.from_dict(data)

    def update_crawler_settings(self, **changes: Any) -> CrawlerSettings:
        current = self.get_crawler_settings()
        try:
            updated = replace(current, **changes).validate()
        except TypeError as e:
            raise ConfigurationError(str(e)) from e
        self._db.set_setting(CRAWLER_SETTINGS_KEY, json.dumps(updated.to_dict()))
        return updated

    def reset_to_defaults(self) -> CrawlerSettings:
        defaults = CrawlerSettings()
        self._db.set_setting(CRAWLER_SETTINGS_KEY, json.dumps(defaults.to_dict()))
        return defaults
