# tests/test_enrichment.py
import asyncio

from auction_watch.enrichment import Enricher, merge_detail
from auction_watch.errors import TransientFetchError

from conftest import FLORENCE, FakeSource


def test_merge_detail_fills_only_missing_fields(make_item):
    item = make_item(title="Office Chair", description=None, msrp=None)
    merged = merge_detail(item, {"title": "Other", "description": "Mesh back", "msrp": "$129.99"})

    assert merged.title == "Office Chair"
    assert merged.description == "Mesh back"
    assert merged.msrp == 129.99
    assert merged.msrp_text == "$129.99"


def test_merge_detail_without_news_returns_same_item(make_item):
    item = make_item(description="Known", msrp=10.0)
    assert merge_detail(item, {"msrp": "n/a"}) is item


def test_enricher_updates_incomplete_items(store, make_item):
    store.upsert_item(make_item("1", description=None))
    store.upsert_item(make_item("2", description=None))
    source = FakeSource(details={"1": {"description": "Mesh back", "msrp": "99"}})

    enriched = asyncio.run(Enricher(store, source, batch_size=10, delay_seconds=0).run())

    assert enriched == 1
    assert sorted(source.detail_calls) == ["1", "2"]
    item = store.get_item("1", FLORENCE)
    assert item.description == "Mesh back"
    assert item.msrp == 99.0
    assert store.get_item("2", FLORENCE).description is None


def test_enricher_survives_fetch_errors(store, make_item):
    class FailingSource(FakeSource):
        async def fetch_item_detail(self, record):
            raise TransientFetchError("timed out")

    store.upsert_item(make_item("1", description=None))
    enriched = asyncio.run(Enricher(store, FailingSource(), batch_size=10, delay_seconds=0).run())
    assert enriched == 0


def test_enricher_disabled_with_zero_batch(store, make_item):
    store.upsert_item(make_item("1", description=None))
    source = FakeSource(details={"1": {"description": "x"}})
    assert asyncio.run(Enricher(store, source, batch_size=0).run()) == 0
    assert source.detail_calls == []
