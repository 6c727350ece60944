"""
Change detection for indexed items.

A short content hash over the stable part of a raw record tells us whether
a re-fetch is new, changed or unchanged. It is used for logging and for
targeting enrichment; it never decides whether an upsert runs.
"""

import json
import hashlib
from enum import Enum
from typing import Optional

from .models import ItemRecord


class ChangeKind(str, Enum):
    NEW = "new"
    CHANGED = "changed"
    UNCHANGED = "unchanged"


# Fields compared directly in addition to the hash
VOLATILE_FIELDS = ("current_bid", "status")


def stable_snippet(raw: dict) -> dict:
    """Minimal stable subset of a raw upstream record."""
    return {
        "itemId": raw.get("itemId", raw.get("id")),
        "locationId": raw.get("locationId"),
        "auctionId": raw.get("auctionId"),
        "endDate": raw.get("utcEndDateTime", raw.get("endDate")),
    }


def hash_dom(snippet) -> str:
    """12-char hex SHA-1 digest of a snippet (strings are hashed as-is)."""
    if not isinstance(snippet, str):
        snippet = json.dumps(snippet, sort_keys=True, default=str)
    return hashlib.sha1(snippet.encode("utf-8")).hexdigest()[:12]


def classify_change(existing: Optional[ItemRecord], incoming: ItemRecord) -> ChangeKind:
    """Compare a freshly normalized record with what the store already holds."""
    if existing is None:
        return ChangeKind.NEW
    if existing.dom_hash != incoming.dom_hash:
        return ChangeKind.CHANGED
    for name in VOLATILE_FIELDS:
        if getattr(existing, name) != getattr(incoming, name):
            return ChangeKind.CHANGED
    return ChangeKind.UNCHANGED
