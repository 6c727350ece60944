"""
Service module for Auction Watch.

Wires the store, the marketplace source, the indexer and the rule engine
together on one asyncio event loop. Can also run single steps from the
command line:

    python -m auction_watch.service --mode serve
    python -m auction_watch.service --mode index
    python -m auction_watch.service --mode reconcile
    python -m auction_watch.service --mode stats
"""

import json
import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .crawler import RuleEngine
from .db import Database, get_db
from .indexer import IndexingScheduler
from .notifications import LoggingNotifier, Notifier
from .reconciliation import reconcile_ended_items
from .sources import BidftaSource, ItemSource

logger = logging.getLogger(__name__)


class AuctionWatchService:
    """
    Indexer and rule engine sharing one store and one scheduler.

    Usage:
        service = AuctionWatchService()
        service.start()
        ...
        await service.stop()
    """

    def __init__(
        self,
        store: Optional[Database] = None,
        source: Optional[ItemSource] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.store = store or get_db()
        self.source = source or BidftaSource()
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.indexer = IndexingScheduler(self.store, self.source, scheduler=self.scheduler)
        self.engine = RuleEngine(
            self.store,
            notifier=notifier or LoggingNotifier(),
            persist_rules=True,
            scheduler=self.scheduler,
        )

    def start(self) -> None:
        """Start both components. Must be called from a running event loop."""
        self.scheduler.start()
        self.indexer.start()
        self.engine.start()
        logger.info("Auction Watch service started")

    async def stop(self) -> None:
        self.indexer.stop()
        self.engine.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.source.aclose()
        logger.info("Auction Watch service stopped")


# =============================================================================
# CLI MODES
# =============================================================================

async def serve() -> None:
    """Run until interrupted."""
    service = AuctionWatchService()
    service.start()
    logger.info("Press Ctrl+C to stop")
    try:
        await asyncio.Event().wait()
    finally:
        await service.stop()


async def index_once() -> dict:
    """Run a single indexing cycle and return its summary."""
    source = BidftaSource()
    indexer = IndexingScheduler(get_db(), source)
    try:
        return await indexer.run_cycle()
    finally:
        await source.aclose()


def main():
    """CLI entry point for the service."""
    import argparse

    parser = argparse.ArgumentParser(description="Auction Watch")
    parser.add_argument(
        "--mode",
        choices=["serve", "index", "reconcile", "stats"],
        default="serve",
        help="Mode to run: serve (continuous), index (single cycle), reconcile (archive ended items), stats (store summary)"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level"
    )

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if args.mode == "serve":
        logger.info("Starting Auction Watch service...")
        try:
            asyncio.run(serve())
        except (KeyboardInterrupt, SystemExit):
            logger.info("Service stopped")
    elif args.mode == "index":
        logger.info("Running single indexing cycle...")
        summary = asyncio.run(index_once())
        print(json.dumps(summary, indent=2, default=str))
    elif args.mode == "reconcile":
        logger.info("Reconciling ended items...")
        archived = reconcile_ended_items(get_db())
        print(f"Archived {archived} ended items")
    elif args.mode == "stats":
        db = get_db()
        stats = db.get_stats()
        stats["ended_archive"] = db.get_ended_item_stats()
        print(json.dumps(stats, indent=2, default=str))


if __name__ == "__main__":
    main()
