"""
Reconciliation module for Auction Watch.

Moves items whose end date has passed out of the live index and into the
ended archive. Each move is a single store transaction, so an item is
never visible as both live and ended, nor as neither.
"""

import logging
from datetime import datetime
from typing import Optional

from .db import ItemStore
from .models import utc_now

logger = logging.getLogger(__name__)


def reconcile_ended_items(store: ItemStore, now: Optional[datetime] = None) -> int:
    """
    Archive every live item whose end date is in the past.

    Items with an unknown end date are left alone; their status stays
    whatever the source last reported.

    Args:
        store: Item store to reconcile
        now: Reference time (defaults to the current UTC time)

    Returns:
        Number of new archive entries created
    """
    now = now or utc_now()
    archived = 0
    checked = 0

    for item in store.get_reconcile_candidates():
        end = item.end_datetime()
        if end is None or end > now:
            continue
        checked += 1
        if store.archive_item(item.item_id, item.location_name, ended_at=now):
            archived += 1

    logger.info(f"Reconciliation: {checked} items past their end date, {archived} newly archived")
    return archived
