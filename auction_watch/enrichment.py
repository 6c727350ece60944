"""
Detail enrichment for indexed items.

Listing pages often omit the description or MSRP. For a bounded batch of
items still missing them, ask the source for the item's detail and fill
in whatever it knows. Existing values are never replaced with None.
"""

import asyncio
import logging
from typing import Optional

from .config import get_indexer_config
from .db import ItemStore
from .errors import UpstreamError
from .models import ItemRecord, to_iso, utc_now
from .normalization import parse_money
from .sources.base import ItemSource

logger = logging.getLogger(__name__)


class Enricher:
    """
    Fills missing title, description and msrp from item detail pages.

    Usage:
        enricher = Enricher(store, source)
        enriched = await enricher.run()
    """

    def __init__(
        self,
        store: ItemStore,
        source: ItemSource,
        batch_size: Optional[int] = None,
        delay_seconds: Optional[float] = None,
    ):
        config = get_indexer_config()
        self.store = store
        self.source = source
        self.batch_size = config.enrichment_batch_size if batch_size is None else batch_size
        self.delay_seconds = config.enrichment_delay_seconds if delay_seconds is None else delay_seconds

    async def run(self, should_stop=None) -> int:
        """
        Enrich one batch.

        Args:
            should_stop: Optional callable; when it returns True the batch
                ends before the next write

        Returns:
            Number of items updated
        """
        if self.batch_size <= 0:
            return 0

        candidates = self.store.get_items_needing_enrichment(self.batch_size)
        if not candidates:
            return 0

        logger.info(f"Enriching up to {len(candidates)} items")
        enriched = 0

        for i, item in enumerate(candidates):
            if i > 0 and self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            try:
                detail = await self.source.fetch_item_detail(item)
            except UpstreamError as e:
                logger.warning(f"Detail fetch failed for {item.item_id}: {e}")
                continue

            if should_stop is not None and should_stop():
                logger.info("Enrichment interrupted by stop request")
                break
            if not detail:
                continue

            updated = merge_detail(item, detail)
            if updated is not item:
                self.store.upsert_item(updated)
                enriched += 1

        logger.info(f"Enriched {enriched}/{len(candidates)} items")
        return enriched


def merge_detail(item: ItemRecord, detail: dict) -> ItemRecord:
    """Return a copy of item with missing fields filled from detail, or item itself if nothing changed."""
    changes = {}

    if item.title is None and detail.get("title"):
        changes["title"] = str(detail["title"]).strip()
    if item.description is None and detail.get("description"):
        changes["description"] = str(detail["description"]).strip()
    if item.msrp is None and detail.get("msrp") is not None:
        msrp = parse_money(detail["msrp"])
        if msrp is not None:
            changes["msrp"] = msrp
            changes["msrp_text"] = str(detail["msrp"])

    if not changes:
        return item
    changes["fetched_at"] = to_iso(utc_now())
    return item.copy(**changes)
