# tests/test_indexer.py
import asyncio

import pytest

from auction_watch import indexer as indexer_module
from auction_watch.config import IndexerConfig
from auction_watch.errors import MalformedRecordError, StoreError, TransientFetchError
from auction_watch.indexer import IndexingScheduler
from auction_watch.models import ItemStatus

from conftest import FLORENCE, LOUISVILLE, BlockingSource, FakeSource


def make_indexer(store, source, indexer_config, upstream_config, locations=(FLORENCE,)):
    return IndexingScheduler(
        store,
        source,
        config=indexer_config,
        upstream_config=upstream_config,
        locations=list(locations),
    )


def test_pagination_stops_after_short_page(store, indexer_config, upstream_config, make_raw):
    source = FakeSource({
        (FLORENCE, 1): [make_raw(str(i)) for i in range(100)],
        (FLORENCE, 2): [make_raw(str(i)) for i in range(100, 140)],
        (FLORENCE, 3): [make_raw("never")],
    })
    indexer = make_indexer(store, source, indexer_config, upstream_config)

    summary = asyncio.run(indexer.run_cycle())

    assert source.calls == [(FLORENCE, 1), (FLORENCE, 2)]
    assert summary["pages_fetched"] == 2
    assert summary["upserts_attempted"] == 140
    assert summary["new"] == 140
    assert store.search_items()["total"] == 140


def test_second_cycle_reports_unchanged(store, indexer_config, upstream_config, make_raw):
    source = FakeSource({(FLORENCE, 1): [make_raw("1"), make_raw("2")]})
    indexer = make_indexer(store, source, indexer_config, upstream_config)

    asyncio.run(indexer.run_cycle())
    summary = asyncio.run(indexer.run_cycle())

    assert summary["unchanged"] == 2
    assert summary["new"] == 0
    assert store.search_items()["total"] == 2


def test_empty_first_page_ends_location(store, indexer_config, upstream_config):
    source = FakeSource()
    indexer = make_indexer(store, source, indexer_config, upstream_config)
    summary = asyncio.run(indexer.run_cycle())
    assert source.calls == [(FLORENCE, 1)]
    assert summary["upserts_attempted"] == 0


def test_unknown_location_items_are_never_stored(store, indexer_config, upstream_config, make_raw):
    source = FakeSource({(FLORENCE, 1): [make_raw("1"), make_raw("2", location="Florence - Industrial Road")]})
    indexer = make_indexer(store, source, indexer_config, upstream_config)

    summary = asyncio.run(indexer.run_cycle())

    assert summary["rejected"] == 1
    assert [i.item_id for i in store.search_items()["items"]] == ["1"]


def test_failed_location_does_not_stop_the_cycle(store, indexer_config, upstream_config, make_raw):
    source = FakeSource({
        (FLORENCE, 1): TransientFetchError("timed out"),
        (LOUISVILLE, 1): [make_raw("9", location=LOUISVILLE)],
    })
    indexer = make_indexer(store, source, indexer_config, upstream_config, locations=(FLORENCE, LOUISVILLE))

    summary = asyncio.run(indexer.run_cycle())

    assert summary["errors"] == 1
    assert summary["failed_locations"] == [FLORENCE]
    assert [i.location_name for i in store.search_items()["items"]] == [LOUISVILLE]


def test_cycle_archives_ended_items(store, indexer_config, upstream_config, make_raw):
    source = FakeSource({(FLORENCE, 1): [make_raw("1", hours_left=-2), make_raw("2")]})
    indexer = make_indexer(store, source, indexer_config, upstream_config)

    summary = asyncio.run(indexer.run_cycle())

    assert summary["archived"] == 1
    assert [e.item_id for e in store.get_all_ended_items()] == ["1"]


def test_overlapping_cycle_is_skipped(store, indexer_config, upstream_config, make_raw):
    async def scenario():
        source = BlockingSource({(FLORENCE, 1): [make_raw("1")]})
        indexer = make_indexer(store, source, indexer_config, upstream_config)
        first = asyncio.create_task(indexer.run_cycle())
        await source.started.wait()
        second = await indexer.run_cycle()
        source.release.set()
        return await first, second, source.calls

    first, second, calls = asyncio.run(scenario())

    assert second is None
    assert first["upserted"] == 1
    assert calls == [(FLORENCE, 1)]


def test_stop_during_fetch_writes_nothing(store, indexer_config, upstream_config, make_raw):
    async def scenario():
        source = BlockingSource({(FLORENCE, 1): [make_raw("1")]})
        indexer = make_indexer(store, source, indexer_config, upstream_config)
        task = asyncio.create_task(indexer.run_cycle())
        await source.started.wait()
        indexer.stop()
        source.release.set()
        return await task

    summary = asyncio.run(scenario())

    assert summary["stopped"] is True
    assert summary["upserts_attempted"] == 0
    assert store.search_items()["total"] == 0


def test_store_failure_propagates_from_cycle(store, indexer_config, upstream_config, make_raw, monkeypatch):
    def broken_upsert(record):
        raise StoreError("disk I/O error")

    monkeypatch.setattr(store, "upsert_item", broken_upsert)
    source = FakeSource({(FLORENCE, 1): [make_raw("1")]})
    indexer = make_indexer(store, source, indexer_config, upstream_config)

    with pytest.raises(StoreError):
        asyncio.run(indexer.run_cycle())
    assert indexer.is_running_cycle is False


def test_store_failure_halts_the_timer(store, indexer_config, upstream_config, make_raw, monkeypatch):
    def broken_upsert(record):
        raise StoreError("disk I/O error")

    monkeypatch.setattr(store, "upsert_item", broken_upsert)
    source = FakeSource({(FLORENCE, 1): [make_raw("1")]})
    indexer = make_indexer(store, source, indexer_config, upstream_config)

    async def scenario():
        indexer.start()
        scheduled = indexer._scheduler.get_job(IndexingScheduler.JOB_ID) is not None
        await indexer._scheduled_cycle()
        halted = indexer._scheduler.get_job(IndexingScheduler.JOB_ID) is None
        indexer.stop()
        return scheduled, halted

    assert asyncio.run(scenario()) == (True, True)


def test_blank_item_id_is_rejected_without_aborting(store, indexer_config, upstream_config, make_raw):
    source = FakeSource({
        (FLORENCE, 1): [make_raw("   "), make_raw("2")],
        (LOUISVILLE, 1): [make_raw("9", location=LOUISVILLE)],
    })
    indexer = make_indexer(store, source, indexer_config, upstream_config, locations=(FLORENCE, LOUISVILLE))

    summary = asyncio.run(indexer.run_cycle())

    assert summary["rejected"] == 1
    assert source.calls == [(FLORENCE, 1), (LOUISVILLE, 1)]
    assert sorted(i.item_id for i in store.search_items()["items"]) == ["2", "9"]


def test_store_rejection_skips_only_that_item(store, indexer_config, upstream_config, make_raw, monkeypatch):
    real_upsert = store.upsert_item

    def picky_upsert(record):
        if record.item_id == "1":
            raise MalformedRecordError("missing source_url")
        real_upsert(record)

    monkeypatch.setattr(store, "upsert_item", picky_upsert)
    source = FakeSource({(FLORENCE, 1): [make_raw("1"), make_raw("2")]})
    indexer = make_indexer(store, source, indexer_config, upstream_config)

    summary = asyncio.run(indexer.run_cycle())

    assert summary["upserts_attempted"] == 2
    assert summary["upserted"] == 1
    assert summary["rejected"] == 1
    assert [i.item_id for i in store.search_items()["items"]] == ["2"]


def test_item_closed_on_refetch_is_archived(store, indexer_config, upstream_config, make_raw):
    pages = {(FLORENCE, 1): [make_raw("1", bid="$12.00")]}
    indexer = make_indexer(store, FakeSource(pages), indexer_config, upstream_config)
    asyncio.run(indexer.run_cycle())
    assert store.get_item("1", FLORENCE).status == ItemStatus.ACTIVE

    pages[(FLORENCE, 1)] = [make_raw("1", bid="$14.00", hours_left=-1, itemClosed=True)]
    summary = asyncio.run(indexer.run_cycle())

    assert summary["archived"] == 1
    ended = store.get_all_ended_items()
    assert [e.item_id for e in ended] == ["1"]
    assert ended[0].final_price == 14.0
    assert store.get_item("1", FLORENCE).status == ItemStatus.ENDED

    asyncio.run(indexer.run_cycle())
    assert len(store.get_all_ended_items()) == 1


def test_pacing_between_pages_and_locations(store, upstream_config, make_raw, monkeypatch):
    delays = []

    async def record_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(indexer_module.asyncio, "sleep", record_sleep)
    config = IndexerConfig(
        page_delay_seconds=1.0,
        location_delay_seconds=3.0,
        initial_delay_seconds=0,
        enrichment_batch_size=0,
    )
    source = FakeSource({
        (FLORENCE, 1): [make_raw(str(i)) for i in range(100)],
        (FLORENCE, 2): [make_raw(str(i)) for i in range(100, 140)],
        (LOUISVILLE, 1): [make_raw("900", location=LOUISVILLE)],
    })
    indexer = make_indexer(store, source, config, upstream_config, locations=(FLORENCE, LOUISVILLE))

    asyncio.run(indexer.run_cycle())

    assert source.calls == [(FLORENCE, 1), (FLORENCE, 2), (LOUISVILLE, 1)]
    assert delays == [1.0, 3.0]


def test_shared_upstream_id_is_fetched_once(store, indexer_config, upstream_config, make_raw):
    erlanger = "Erlanger — Kenton Lane Road 100"
    bare = make_raw("3")
    del bare["locationName"]
    source = FakeSource({
        (FLORENCE, 1): [make_raw("1"), make_raw("2", location=erlanger), bare],
    })
    indexer = make_indexer(store, source, indexer_config, upstream_config, locations=(FLORENCE, erlanger))

    summary = asyncio.run(indexer.run_cycle())

    assert indexer.fetch_targets() == [(FLORENCE, None)]
    assert source.calls == [(FLORENCE, 1)]
    assert store.get_item("1", FLORENCE) is not None
    assert store.get_item("2", erlanger) is not None
    # Without its own location text an item cannot be placed among shared facilities
    assert summary["rejected"] == 1


def test_single_facility_id_keeps_location_hint(store, indexer_config, upstream_config):
    indexer = make_indexer(store, FakeSource(), indexer_config, upstream_config, locations=(FLORENCE, LOUISVILLE))
    assert indexer.fetch_targets() == [(FLORENCE, FLORENCE), (LOUISVILLE, LOUISVILLE)]
