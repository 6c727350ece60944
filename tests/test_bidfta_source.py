# tests/test_bidfta_source.py
import asyncio
import json

import httpx
import pytest

from auction_watch.config import UpstreamConfig
from auction_watch.errors import TransientFetchError, UnknownLocationError, UpstreamError
from auction_watch.models import ItemRecord
from auction_watch.sources import BidftaSource

FLORENCE = "Florence — Industrial Road"


def run_with_source(handler, action):
    """Build a source over a mock transport, run action(source), close the client."""
    async def scenario():
        config = UpstreamConfig(page_size=100, fetch_retries=3, fetch_backoff=0)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            source = BidftaSource(config=config, client=client)
            return await action(source)
    return asyncio.run(scenario())


def test_fetch_page_json(make_raw):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"items": [make_raw("1"), make_raw("2")], "total": 2})

    items = run_with_source(handler, lambda s: s.fetch_page(FLORENCE, 2, query="chair"))

    assert [i["itemId"] for i in items] == ["1", "2"]
    params = seen[0].url.params
    assert seen[0].url.path == "/items"
    assert params["locationId"] == "21"
    assert params["pageId"] == "2"
    assert params["itemSearchKeywords"] == "chair"
    assert params["pageSize"] == "100"


def test_fetch_page_next_data_html():
    payload = {"props": {"pageProps": {"items": [{"itemId": 7}]}}}
    html = f'<html><body><script id="__NEXT_DATA__" type="application/json">{json.dumps(payload)}</script></body></html>'

    items = run_with_source(lambda r: httpx.Response(200, html=html), lambda s: s.fetch_page(FLORENCE, 1))
    assert items == [{"itemId": 7}]


def test_fetch_page_initial_state_html():
    state = {"search": {"results": [{"itemId": 8}, "junk"]}}
    html = f"<html><script>window.__INITIAL_STATE__ = {json.dumps(state)};</script></html>"

    items = run_with_source(lambda r: httpx.Response(200, html=html), lambda s: s.fetch_page(FLORENCE, 1))
    assert items == [{"itemId": 8}]


def test_server_errors_are_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"items": []})

    assert run_with_source(handler, lambda s: s.fetch_page(FLORENCE, 1)) == []
    assert len(attempts) == 3


def test_persistent_server_error_is_transient():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(502)

    with pytest.raises(TransientFetchError):
        run_with_source(handler, lambda s: s.fetch_page(FLORENCE, 1))
    assert len(attempts) == 3


def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(TransientFetchError):
        run_with_source(handler, lambda s: s.fetch_page(FLORENCE, 1))


def test_client_error_is_not_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(404)

    with pytest.raises(UpstreamError) as exc_info:
        run_with_source(handler, lambda s: s.fetch_page(FLORENCE, 1))
    assert not isinstance(exc_info.value, TransientFetchError)
    assert len(attempts) == 1


def test_unrecognized_body_is_upstream_error():
    with pytest.raises(UpstreamError):
        run_with_source(lambda r: httpx.Response(200, json={"message": "ok"}), lambda s: s.fetch_page(FLORENCE, 1))
    with pytest.raises(UpstreamError):
        run_with_source(lambda r: httpx.Response(200, html="<html></html>"), lambda s: s.fetch_page(FLORENCE, 1))


def test_unknown_location_is_rejected_before_fetching():
    with pytest.raises(UnknownLocationError):
        run_with_source(lambda r: httpx.Response(200, json={"items": []}), lambda s: s.fetch_page("Nowhere", 1))


def test_fetch_item_detail_scrapes_page():
    html = """
    <html><head>
      <meta property="og:title" content="Office Chair">
      <meta name="description" content="Mesh back, adjustable arms">
    </head><body><div>MSRP: $129.99</div></body></html>
    """
    record = ItemRecord(
        item_id="1",
        location_name=FLORENCE,
        source_url="https://www.bidfta.com/itemDetails?idauctions=5&idItems=1",
    )

    detail = run_with_source(lambda r: httpx.Response(200, html=html), lambda s: s.fetch_item_detail(record))

    assert detail == {"title": "Office Chair", "description": "Mesh back, adjustable arms", "msrp": "129.99"}
