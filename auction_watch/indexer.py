"""
Discovery/Indexing Scheduler for Auction Watch.

Each cycle walks the canonical locations in a fixed order, fetching each
upstream locationId once:
1. Fetch → Page through the source's listings for the location
2. Normalize → Map raw items to ItemRecords (rejecting unknown locations)
3. Classify → New / changed / unchanged, for the summary only
4. Store → Upsert every normalized item
Then reconciles ended items into the archive and enriches a batch of
incomplete items.

Runs on an APScheduler AsyncIOScheduler interval job. Only one cycle may
be in flight at a time.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .change_detection import classify_change
from .config import IndexerConfig, UpstreamConfig, get_indexer_config, get_upstream_config
from .db import ItemStore
from .enrichment import Enricher
from .errors import MalformedRecordError, StoreError, UnknownLocationError, UpstreamError
from .locations import CANONICAL_LOCATIONS, get_location_id
from .normalization import ItemNormalizer
from .reconciliation import reconcile_ended_items
from .models import ItemStatus, utc_now
from .sources.base import ItemSource

logger = logging.getLogger(__name__)


class IndexingScheduler:
    """
    Periodically indexes every canonical location into the store.

    Usage:
        indexer = IndexingScheduler(store, source)
        summary = await indexer.run_cycle()   # one cycle by hand
        indexer.start()                       # or on a timer
    """

    JOB_ID = "index_cycle"

    def __init__(
        self,
        store: ItemStore,
        source: ItemSource,
        config: Optional[IndexerConfig] = None,
        locations: Optional[list[str]] = None,
        upstream_config: Optional[UpstreamConfig] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        enricher: Optional[Enricher] = None,
    ):
        self.store = store
        self.source = source
        self.config = config or get_indexer_config()
        self.upstream_config = upstream_config or get_upstream_config()
        self.locations = list(locations) if locations is not None else list(CANONICAL_LOCATIONS)
        self.normalizer = ItemNormalizer(self.upstream_config.base_url)
        self.enricher = enricher or Enricher(
            store,
            source,
            batch_size=self.config.enrichment_batch_size,
            delay_seconds=self.config.enrichment_delay_seconds,
        )

        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._in_flight = False
        self._stopping = False
        self.last_summary: Optional[dict] = None

    @property
    def is_running_cycle(self) -> bool:
        return self._in_flight

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """
        Schedule the indexing job. Must be called from a running event loop.

        The first cycle runs after the configured initial delay, then every
        index_interval_minutes.
        """
        self._stopping = False
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone="UTC")

        first_run = utc_now() + timedelta(seconds=self.config.initial_delay_seconds)
        self._scheduler.add_job(
            self._scheduled_cycle,
            trigger=IntervalTrigger(minutes=self.config.index_interval_minutes),
            id=self.JOB_ID,
            name="Index marketplace listings",
            next_run_time=first_run,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if self._owns_scheduler and not self._scheduler.running:
            self._scheduler.start()

        logger.info(
            f"Indexer scheduled every {self.config.index_interval_minutes} min "
            f"for {len(self.locations)} locations (first run {first_run.isoformat()})"
        )

    def stop(self) -> None:
        """Cancel the timer. An in-flight cycle exits after its current fetch."""
        self._stopping = True
        self._remove_job()
        if self._owns_scheduler and self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        logger.info("Indexer stopped")

    def _remove_job(self) -> None:
        if self._scheduler is not None and self._scheduler.get_job(self.JOB_ID) is not None:
            self._scheduler.remove_job(self.JOB_ID)

    async def _scheduled_cycle(self) -> None:
        """Timer entry point: errors are logged, store failures halt the timer."""
        try:
            await self.run_cycle()
        except StoreError as e:
            logger.critical(f"Store failure, halting indexer: {e}")
            self._remove_job()
        except Exception as e:
            logger.error(f"Indexing cycle failed: {e}")

    # =========================================================================
    # CYCLE
    # =========================================================================

    async def run_cycle(self, now: Optional[datetime] = None) -> Optional[dict]:
        """
        Run one full indexing cycle.

        Returns:
            Summary dict with counts, or None if a cycle was already running

        Raises:
            StoreError: the store became unusable
        """
        if self._in_flight:
            logger.warning("Indexing cycle already in progress, skipping")
            return None

        self._in_flight = True
        try:
            summary = await self._run_cycle(now)
        finally:
            self._in_flight = False

        self.last_summary = summary
        return summary

    async def _run_cycle(self, now: Optional[datetime]) -> dict:
        start_time = utc_now()
        logger.info(f"Starting indexing cycle at {start_time.isoformat()}")

        summary = {
            "started_at": start_time.isoformat(),
            "pages_fetched": 0,
            "fetched": 0,
            "upserts_attempted": 0,
            "upserted": 0,
            "new": 0,
            "changed": 0,
            "unchanged": 0,
            "rejected": 0,
            "errors": 0,
            "failed_locations": [],
            "archived": 0,
            "enriched": 0,
            "stopped": False,
        }

        for i, (location, hint) in enumerate(self.fetch_targets()):
            if i > 0 and self.config.location_delay_seconds:
                await asyncio.sleep(self.config.location_delay_seconds)
            if self._stopping:
                break
            await self._index_location(location, hint, summary, now)

        if not self._stopping:
            summary["archived"] += reconcile_ended_items(self.store, now)

        if not self._stopping:
            summary["enriched"] = await self.enricher.run(should_stop=lambda: self._stopping)

        summary["stopped"] = self._stopping
        end_time = utc_now()
        summary["completed_at"] = end_time.isoformat()
        summary["duration_seconds"] = round((end_time - start_time).total_seconds(), 3)

        logger.info(
            f"Indexing cycle complete: {summary['pages_fetched']} pages, "
            f"{summary['upserted']}/{summary['upserts_attempted']} upserted "
            f"({summary['new']} new, {summary['changed']} changed), "
            f"{summary['rejected']} rejected, {summary['errors']} errors, "
            f"{summary['archived']} archived"
        )
        return summary

    def fetch_targets(self) -> list[tuple[str, Optional[str]]]:
        """
        One (fetch_location, location_hint) pair per upstream locationId.

        Facilities sharing an id are served by the same upstream pages, so
        they are fetched once. The hint is only given when the id belongs to
        a single facility; otherwise each item must name its own location.
        """
        groups: dict[str, list[str]] = {}
        for location in self.locations:
            groups.setdefault(get_location_id(location) or location, []).append(location)
        return [(members[0], members[0] if len(members) == 1 else None) for members in groups.values()]

    async def _index_location(
        self, location: str, hint: Optional[str], summary: dict, now: Optional[datetime]
    ) -> None:
        """Page through one location until an empty or short page."""
        page_size = self.upstream_config.page_size
        location_count = 0

        for page in range(1, self.upstream_config.max_pages + 1):
            if page > 1 and self.config.page_delay_seconds:
                await asyncio.sleep(self.config.page_delay_seconds)
            if self._stopping:
                return

            try:
                raw_items = await self.source.fetch_page(location, page)
            except (UpstreamError, MalformedRecordError, UnknownLocationError) as e:
                logger.error(f"Fetch failed for {location} page {page}, abandoning location: {e}")
                summary["errors"] += 1
                summary["failed_locations"].append(location)
                return

            # The fetch may have outlived a stop request
            if self._stopping:
                return

            summary["pages_fetched"] += 1
            summary["fetched"] += len(raw_items)
            location_count += len(raw_items)

            for raw in raw_items:
                self._index_item(raw, hint, summary, now)

            if len(raw_items) < page_size:
                break
        else:
            logger.warning(f"{location}: stopped at max_pages={self.upstream_config.max_pages}")

        logger.info(f"{location}: {location_count} items fetched")

    def _index_item(self, raw: dict, hint: Optional[str], summary: dict, now: Optional[datetime]) -> None:
        try:
            record = self.normalizer.normalize(raw, hint, now)
        except (MalformedRecordError, UnknownLocationError) as e:
            logger.warning(f"Rejected item {raw.get('itemId', raw.get('id'))}: {e}")
            summary["rejected"] += 1
            return

        existing = self.store.get_item(record.item_id, record.location_name)
        kind = classify_change(existing, record)

        summary["upserts_attempted"] += 1
        try:
            self.store.upsert_item(record)
        except MalformedRecordError as e:
            logger.warning(f"Store rejected item {record.item_id}: {e}")
            summary["rejected"] += 1
            return
        summary["upserted"] += 1
        summary[kind.value] += 1

        # Closed upstream: snapshot it now, reconciliation only sees live rows
        if record.status == ItemStatus.ENDED:
            if self.store.archive_item(record.item_id, record.location_name, ended_at=now):
                summary["archived"] += 1
