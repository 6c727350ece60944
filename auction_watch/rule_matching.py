"""
Rule Matching module for Auction Watch.

Pure predicates deciding whether an indexed item satisfies a crawler
rule's location, price and time constraints. Text matching is done by
the store query; everything here is evaluated per item.
"""

import logging
from datetime import datetime
from typing import Optional

from .locations import keywords_for
from .models import CrawlerRule, ItemRecord, utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# PREDICATES
# =============================================================================

def location_matches(item: ItemRecord, locations: list[str]) -> bool:
    """
    True when any rule location identifies the item's location.

    An identifier matches when one of its keywords (or the identifier
    itself) appears, case-insensitively, in the item's canonical location
    name or its raw location text. No locations means all locations.
    """
    if not locations:
        return True

    haystack = f"{item.location_name or ''} | {item.location_text or ''}".lower()
    for identifier in locations:
        if any(keyword in haystack for keyword in keywords_for(identifier)):
            return True
    return False


def price_matches(item: ItemRecord, max_bid_price: float) -> bool:
    """Unknown bids never match."""
    return item.current_bid is not None and item.current_bid <= max_bid_price


def time_left_within(item: ItemRecord, max_minutes: int, now: Optional[datetime] = None) -> Optional[int]:
    """
    Minutes left when 0 <= minutes <= max_minutes, else None.

    Unknown end dates never match.
    """
    minutes = item.time_left_minutes(now)
    if minutes is None or minutes < 0 or minutes > max_minutes:
        return None
    return minutes


def matches_rule(item: ItemRecord, rule: CrawlerRule, now: Optional[datetime] = None) -> bool:
    """Check location, price and time constraints of a rule."""
    return (
        location_matches(item, rule.locations)
        and price_matches(item, rule.max_bid_price)
        and time_left_within(item, rule.max_time_left_minutes, now) is not None
    )


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def filter_matches(
    items: list[ItemRecord],
    rule: CrawlerRule,
    now: Optional[datetime] = None,
) -> list[tuple[ItemRecord, int]]:
    """
    Filter items down to rule matches.

    Returns:
        (item, minutes_left) pairs, in the order given
    """
    now = now or utc_now()
    matches = []

    for item in items:
        if not location_matches(item, rule.locations):
            continue
        if not price_matches(item, rule.max_bid_price):
            continue
        minutes = time_left_within(item, rule.max_time_left_minutes, now)
        if minutes is None:
            continue
        matches.append((item, minutes))

    logger.debug(f"Rule {rule.id}: {len(matches)}/{len(items)} items match")
    return matches
