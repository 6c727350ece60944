"""
BidFTA listing client.

Fetches paginated item listings per facility with httpx. The listing
endpoint answers either with JSON or with an HTML page embedding its
initial state, which is pulled out with BeautifulSoup.
"""

import re
import json
import logging
from typing import Optional

import httpx
from bs4 import BeautifulSoup

from .base import ItemSource, retry_async
from ..config import UpstreamConfig, get_upstream_config
from ..errors import TransientFetchError, UnknownLocationError, UpstreamError
from ..locations import get_location_id
from ..models import ItemRecord

logger = logging.getLogger(__name__)

INITIAL_STATE_PATTERN = re.compile(r"window\.__INITIAL_STATE__\s*=\s*(\{.*?\})\s*;?\s*$", re.DOTALL)
MSRP_PATTERN = re.compile(r"MSRP[:\s]*\$?\s*([\d,]+(?:\.\d+)?)", re.IGNORECASE)

# Keys that may hold the item list in a decoded payload, outermost first
ITEM_LIST_KEYS = ("items", "results")
NESTED_KEYS = ("props", "pageProps", "data", "search", "initialState")


class BidftaSource(ItemSource):
    """
    Source for www.bidfta.com item listings.

    Usage:
        source = BidftaSource()
        raw_items = await source.fetch_page("Florence — Industrial Road", 1)
        await source.aclose()
    """

    name = "bidfta"

    def __init__(self, config: Optional[UpstreamConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_upstream_config()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=self.config.request_timeout,
            follow_redirects=True,
            headers={
                "User-Agent": self.config.user_agent,
                "Accept": "application/json,text/html;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.5",
            },
        )
        self._get = retry_async(
            TransientFetchError,
            tries=self.config.fetch_retries,
            delay=self.config.fetch_backoff,
            backoff=2.0,
        )(self._request)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _request(self, url: str, params: Optional[dict] = None) -> httpx.Response:
        """Single GET, with failures mapped onto the error taxonomy."""
        try:
            response = await self.client.get(url, params=params)
        except httpx.TransportError as e:
            raise TransientFetchError(f"Request failed for {url}: {e!r}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientFetchError(f"HTTP {response.status_code} from {url}")
        if response.status_code >= 400:
            raise UpstreamError(f"HTTP {response.status_code} from {url}")
        return response

    async def fetch_page(self, location_name: str, page: int, query: str = "") -> list[dict]:
        location_id = get_location_id(location_name)
        if location_id is None:
            raise UnknownLocationError(location_name)

        url = f"{self.config.base_url}/items"
        params = {
            "pageId": page,
            "itemSearchKeywords": query,
            "locationId": location_id,
            "pageSize": self.config.page_size,
        }
        response = await self._get(url, params)
        items = self.parse_listing(response)
        logger.debug(f"{location_name} page {page}: {len(items)} raw items")
        return items

    async def fetch_item_detail(self, record: ItemRecord) -> Optional[dict]:
        """Scrape title, description and MSRP from the item detail page."""
        response = await self._get(record.source_url)
        soup = BeautifulSoup(response.text, "html.parser")

        detail = {}

        title_elem = soup.find("meta", property="og:title") or soup.find("h1")
        if title_elem is not None:
            detail["title"] = title_elem.get("content") if title_elem.name == "meta" else title_elem.get_text(" ", strip=True)

        desc_elem = soup.find("meta", attrs={"name": "description"})
        if desc_elem is not None and desc_elem.get("content"):
            detail["description"] = desc_elem["content"]
        else:
            desc_elem = soup.find(class_=re.compile(r"desc|specs|details"))
            if desc_elem is not None:
                detail["description"] = desc_elem.get_text(" ", strip=True)

        msrp_match = MSRP_PATTERN.search(soup.get_text(" "))
        if msrp_match:
            detail["msrp"] = msrp_match.group(1)

        detail = {k: v for k, v in detail.items() if v}
        return detail or None

    # =========================================================================
    # PARSING
    # =========================================================================

    def parse_listing(self, response: httpx.Response) -> list[dict]:
        """
        Extract raw item dictionaries from a listing response.

        Raises:
            UpstreamError: the body holds no recognizable item list
        """
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                payload = response.json()
            except ValueError as e:
                raise UpstreamError(f"Invalid JSON from {response.url}: {e}") from e
        else:
            payload = self._payload_from_html(response.text, str(response.url))

        items = self._find_items(payload)
        if items is None:
            raise UpstreamError(f"No item list in response from {response.url}")
        return [item for item in items if isinstance(item, dict)]

    def _payload_from_html(self, html: str, url: str):
        soup = BeautifulSoup(html, "html.parser")

        script = soup.find("script", id="__NEXT_DATA__")
        if script is not None and script.string:
            return self._loads(script.string, url)

        for script in soup.find_all("script"):
            text = script.string or ""
            match = INITIAL_STATE_PATTERN.search(text)
            if match:
                return self._loads(match.group(1), url)

        raise UpstreamError(f"No embedded listing data in page {url}")

    def _loads(self, text: str, url: str):
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise UpstreamError(f"Unparseable embedded data in {url}: {e}") from e

    def _find_items(self, payload) -> Optional[list]:
        if isinstance(payload, list):
            return payload
        if not isinstance(payload, dict):
            return None
        for key in ITEM_LIST_KEYS:
            if isinstance(payload.get(key), list):
                return payload[key]
        for key in NESTED_KEYS:
            if isinstance(payload.get(key), dict):
                found = self._find_items(payload[key])
                if found is not None:
                    return found
        return None
