"""
Configuration module for Auction Watch.

Loads environment variables and provides configuration constants.
Local overrides belong in a .env file (never commit it to git).
"""

import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

from .errors import ConfigurationError

# Load environment variables from .env file
load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class StoreConfig:
    """Embedded database configuration."""
    database_url: str = "sqlite:///data/auctions.db"
    echo: bool = False

    @classmethod
    def from_env(cls) -> "StoreConfig":
        return cls(
            database_url=os.getenv("AUCTION_DB_URL", "sqlite:///data/auctions.db"),
            echo=_env_bool("AUCTION_DB_ECHO", False),
        )


@dataclass
class UpstreamConfig:
    """Marketplace fetch settings."""
    base_url: str = "https://www.bidfta.com"
    request_timeout: float = 30.0
    page_size: int = 100
    max_pages: int = 100
    fetch_retries: int = 3
    fetch_backoff: float = 2.0
    user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AuctionWatch/1.0"

    @classmethod
    def from_env(cls) -> "UpstreamConfig":
        config = cls(
            base_url=os.getenv("BIDFTA_BASE_URL", "https://www.bidfta.com").rstrip("/"),
            request_timeout=_env_float("REQUEST_TIMEOUT", 30.0),
            page_size=_env_int("PAGE_SIZE", 100),
            max_pages=_env_int("MAX_PAGES", 100),
            fetch_retries=_env_int("FETCH_RETRIES", 3),
            fetch_backoff=_env_float("FETCH_BACKOFF", 2.0),
            user_agent=os.getenv("USER_AGENT", cls.user_agent),
        )
        if config.page_size <= 0 or config.max_pages <= 0:
            raise ConfigurationError("PAGE_SIZE and MAX_PAGES must be positive")
        if config.fetch_retries < 1:
            raise ConfigurationError("FETCH_RETRIES must be at least 1")
        return config


@dataclass
class IndexerConfig:
    """Discovery/indexing cadence and pacing."""
    index_interval_minutes: float = 15.0
    # Delays keep us under the marketplace's acceptable request rate
    page_delay_seconds: float = 1.0
    location_delay_seconds: float = 3.0
    initial_delay_seconds: float = 30.0
    enrichment_batch_size: int = 100
    enrichment_delay_seconds: float = 0.1

    @classmethod
    def from_env(cls) -> "IndexerConfig":
        config = cls(
            index_interval_minutes=_env_float("INDEX_INTERVAL_MINUTES", 15.0),
            page_delay_seconds=_env_float("PAGE_DELAY_SECONDS", 1.0),
            location_delay_seconds=_env_float("LOCATION_DELAY_SECONDS", 3.0),
            initial_delay_seconds=_env_float("INITIAL_DELAY_SECONDS", 30.0),
            enrichment_batch_size=_env_int("ENRICHMENT_BATCH_SIZE", 100),
            enrichment_delay_seconds=_env_float("ENRICHMENT_DELAY_SECONDS", 0.1),
        )
        if config.index_interval_minutes <= 0:
            raise ConfigurationError("INDEX_INTERVAL_MINUTES must be positive")
        return config


@dataclass
class CrawlerConfig:
    """Rule engine settings."""
    result_retention_hours: float = 24.0
    rule_search_page_size: int = 500

    @classmethod
    def from_env(cls) -> "CrawlerConfig":
        config = cls(
            result_retention_hours=_env_float("RESULT_RETENTION_HOURS", 24.0),
            rule_search_page_size=_env_int("RULE_SEARCH_PAGE_SIZE", 500),
        )
        if config.result_retention_hours <= 0 or config.rule_search_page_size <= 0:
            raise ConfigurationError("RESULT_RETENTION_HOURS and RULE_SEARCH_PAGE_SIZE must be positive")
        return config


# Global configuration instances (lazy loaded)
_store_config: Optional[StoreConfig] = None
_upstream_config: Optional[UpstreamConfig] = None
_indexer_config: Optional[IndexerConfig] = None
_crawler_config: Optional[CrawlerConfig] = None


def get_store_config() -> StoreConfig:
    """Get store configuration (cached)."""
    global _store_config
    if _store_config is None:
        _store_config = StoreConfig.from_env()
    return _store_config


def get_upstream_config() -> UpstreamConfig:
    """Get upstream configuration (cached)."""
    global _upstream_config
    if _upstream_config is None:
        _upstream_config = UpstreamConfig.from_env()
    return _upstream_config


def get_indexer_config() -> IndexerConfig:
    """Get indexer configuration (cached)."""
    global _indexer_config
    if _indexer_config is None:
        _indexer_config = IndexerConfig.from_env()
    return _indexer_config


def get_crawler_config() -> CrawlerConfig:
    """Get crawler configuration (cached)."""
    global _crawler_config
    if _crawler_config is None:
        _crawler_config = CrawlerConfig.from_env()
    return _crawler_config
