"""
Auction Watch - Liquidation Auction Indexer and Rule Crawler

Keeps a local, searchable index of BidFTA listings across a fixed set of
facilities, retires ended auctions into an archive, and checks
user-defined crawler rules against the live index on their own timers.

Modules:
- config: Configuration and environment variables
- errors: Exception taxonomy
- locations: Canonical facility whitelist and rule location keywords
- models: Canonical data models (dataclasses)
- normalization: Map raw listings to the canonical schema
- change_detection: Content hashing and new/changed/unchanged classification
- db: Embedded SQLite store (items, ended archive, rules)
- sources: Marketplace clients
- reconciliation: Move ended items into the archive
- enrichment: Fill missing fields from item detail pages
- indexer: Periodic discovery/indexing scheduler
- rule_matching: Rule location/price/time predicates
- crawler: Rule engine and results buffer
- notifications: Match notifiers
- service: Wiring and CLI
"""

__version__ = "0.1.0"

# Convenient imports
from .errors import (
    AuctionWatchError,
    UpstreamError,
    TransientFetchError,
    MalformedRecordError,
    UnknownLocationError,
    ConfigurationError,
    StoreError,
)
from .models import (
    ItemStatus,
    ItemRecord,
    EndedAuctionItem,
    CrawlerRule,
    StoredResult,
)
from .locations import CANONICAL_LOCATIONS, map_location
from .normalization import normalize_items, ItemNormalizer
from .db import Database, ItemStore, RuleRepository, get_db
from .indexer import IndexingScheduler
from .crawler import RuleEngine
from .reconciliation import reconcile_ended_items
from .notifications import Notifier, LoggingNotifier, CallbackNotifier

__all__ = [
    # Errors
    "AuctionWatchError",
    "UpstreamError",
    "TransientFetchError",
    "MalformedRecordError",
    "UnknownLocationError",
    "ConfigurationError",
    "StoreError",
    # Models
    "ItemStatus",
    "ItemRecord",
    "EndedAuctionItem",
    "CrawlerRule",
    "StoredResult",
    # Locations
    "CANONICAL_LOCATIONS",
    "map_location",
    # Normalization
    "normalize_items",
    "ItemNormalizer",
    # Store
    "Database",
    "ItemStore",
    "RuleRepository",
    "get_db",
    # Indexing
    "IndexingScheduler",
    "reconcile_ended_items",
    # Rules
    "RuleEngine",
    "Notifier",
    "LoggingNotifier",
    "CallbackNotifier",
]
