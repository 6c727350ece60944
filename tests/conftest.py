# tests/conftest.py
import asyncio
from datetime import timedelta

import pytest

from auction_watch.config import CrawlerConfig, IndexerConfig, UpstreamConfig
from auction_watch.db import Database
from auction_watch.models import ItemRecord, ItemStatus, to_iso, utc_now
from auction_watch.sources.base import ItemSource

FLORENCE = "Florence — Industrial Road"
LOUISVILLE = "Louisville — Intermodal Drive"


class FakeSource(ItemSource):
    """Serves canned pages; a page value that is an exception gets raised."""

    name = "fake"

    def __init__(self, pages=None, details=None):
        self.pages = pages or {}
        self.details = details or {}
        self.calls = []
        self.detail_calls = []

    async def fetch_page(self, location_name, page, query=""):
        self.calls.append((location_name, page))
        result = self.pages.get((location_name, page), [])
        if isinstance(result, Exception):
            raise result
        return list(result)

    async def fetch_item_detail(self, record):
        self.detail_calls.append(record.item_id)
        return self.details.get(record.item_id)


class BlockingSource(FakeSource):
    """Holds the first fetch open until released."""

    def __init__(self, pages=None):
        super().__init__(pages)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_page(self, location_name, page, query=""):
        self.started.set()
        await self.release.wait()
        return await super().fetch_page(location_name, page, query)


@pytest.fixture
def store():
    db = Database("sqlite://")
    yield db
    db.close()


@pytest.fixture
def upstream_config():
    return UpstreamConfig(page_size=100, max_pages=10, fetch_retries=3, fetch_backoff=0)


@pytest.fixture
def indexer_config():
    return IndexerConfig(
        index_interval_minutes=15,
        page_delay_seconds=0,
        location_delay_seconds=0,
        initial_delay_seconds=3600,
        enrichment_batch_size=0,
        enrichment_delay_seconds=0,
    )


@pytest.fixture
def crawler_config():
    return CrawlerConfig(result_retention_hours=24, rule_search_page_size=50)


@pytest.fixture
def make_item():
    def _make(
        item_id="1001",
        location_name=FLORENCE,
        title="Office Chair",
        current_bid=8.5,
        minutes_left=30,
        status=ItemStatus.ACTIVE,
        now=None,
        **fields,
    ):
        now = now or utc_now()
        end_date = to_iso(now + timedelta(minutes=minutes_left)) if minutes_left is not None else None
        return ItemRecord(
            item_id=item_id,
            location_name=location_name,
            source_url=fields.pop(
                "source_url", f"https://www.bidfta.com/itemDetails?idauctions=500&idItems={item_id}"
            ),
            title=title,
            current_bid=current_bid,
            end_date=end_date,
            status=status,
            **fields,
        )
    return _make


@pytest.fixture
def make_raw():
    def _make(item_id, location=FLORENCE, bid="$5.00", hours_left=24, **fields):
        raw = {
            "itemId": item_id,
            "auctionId": "500",
            "title": f"Item {item_id}",
            "currentBid": bid,
            "utcEndDateTime": to_iso(utc_now() + timedelta(hours=hours_left)),
            "locationName": location,
        }
        raw.update(fields)
        return raw
    return _make
