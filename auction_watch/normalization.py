"""
Normalization module for Auction Watch.

Maps raw marketplace item records into the canonical ItemRecord schema.
Missing optional fields become None. Nothing is invented: a missing bid
stays missing.
"""

import re
import math
import logging
from datetime import datetime, timezone
from typing import Optional

from .config import get_upstream_config
from .change_detection import hash_dom, stable_snippet
from .errors import MalformedRecordError, UnknownLocationError
from .locations import map_location
from .models import ItemRecord, ItemStatus, parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)


# Raw field names, in order of preference
ITEM_ID_FIELDS = ("itemId", "id", "item_id")
AUCTION_ID_FIELDS = ("auctionId", "auction_id", "idauctions")
TITLE_FIELDS = ("title", "itemTitle")
DESCRIPTION_FIELDS = ("description", "specs")
MSRP_FIELDS = ("msrp", "itemMsrp")
BID_FIELDS = ("currentBid", "lastHighBid", "currentPrice", "current_bid")
END_DATE_FIELDS = ("utcEndDateTime", "endDate", "end_date")
LOCATION_FIELDS = ("locationName", "location", "facility")
CLOSED_FIELDS = ("itemClosed", "closed", "isClosed")

TIME_LEFT_PATTERN = re.compile(r"(\d+)\s*(d|h|m|s)", re.IGNORECASE)
TIME_LEFT_UNITS = {"d": 86400, "h": 3600, "m": 60, "s": 1}


def _first(raw: dict, names: tuple) -> Optional[object]:
    for name in names:
        value = raw.get(name)
        if value is not None and value != "":
            return value
    return None


def parse_money(value) -> Optional[float]:
    """Strip $, commas and whitespace. Returns a non-negative float or None."""
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        # A sign is never part of a valid price
        if text.startswith("-") or text.startswith("$-"):
            return None
        cleaned = re.sub(r"[^0-9.]", "", text)
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None

    if not math.isfinite(number) or number < 0:
        return None
    return number


def parse_time_left_to_seconds(text: Optional[str]) -> Optional[int]:
    """'1d 2h 3m 4s' (any subset) -> seconds, or None."""
    if not text:
        return None
    seconds = 0
    for amount, unit in TIME_LEFT_PATTERN.findall(text):
        seconds += int(amount) * TIME_LEFT_UNITS[unit.lower()]
    return seconds if seconds > 0 else None


def parse_end_date(value) -> Optional[datetime]:
    """Parse an upstream end timestamp into aware UTC."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch milliseconds
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return parse_iso(value)


# =============================================================================
# NORMALIZER CLASS
# =============================================================================

class ItemNormalizer:
    """
    Normalizes raw marketplace records into ItemRecord objects.

    Usage:
        normalizer = ItemNormalizer()
        records = normalizer.normalize_batch(raw_items, "Florence — Industrial Road")
    """

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = (base_url or get_upstream_config().base_url).rstrip("/")

    def normalize_batch(
        self,
        raw_items: list[dict],
        location_hint: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[ItemRecord]:
        """
        Normalize a batch of raw items, skipping the ones that cannot be used.

        Args:
            raw_items: Raw item dictionaries from a source
            location_hint: Canonical location the page was fetched for

        Returns:
            List of normalized ItemRecord objects
        """
        normalized = []

        for raw in raw_items:
            try:
                normalized.append(self.normalize(raw, location_hint, now))
            except (MalformedRecordError, UnknownLocationError) as e:
                logger.warning(f"Skipping raw item {_first(raw, ITEM_ID_FIELDS)}: {e}")
                continue

        logger.debug(f"Normalized {len(normalized)}/{len(raw_items)} items")
        return normalized

    def normalize(
        self,
        raw: dict,
        location_hint: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ItemRecord:
        """
        Normalize a single raw item.

        Raises:
            MalformedRecordError: no item id or no way to build a source URL
            UnknownLocationError: the location is not in the whitelist
        """
        if not isinstance(raw, dict):
            raise MalformedRecordError(f"Raw item is not a mapping: {type(raw).__name__}")

        now = now or utc_now()

        raw_item_id = _first(raw, ITEM_ID_FIELDS)
        if raw_item_id is None:
            raise MalformedRecordError("Raw item has no item id")
        item_id = str(raw_item_id).strip()
        if not item_id:
            raise MalformedRecordError("Raw item has a blank item id")

        location_text = self._location_text(raw) or location_hint
        location_name = map_location(location_text)
        if location_name is None:
            raise UnknownLocationError(location_text)

        auction_id = _first(raw, AUCTION_ID_FIELDS)
        auction_id = str(auction_id) if auction_id is not None else None
        source_url = self._build_source_url(raw, auction_id, item_id)

        msrp_raw = _first(raw, MSRP_FIELDS)
        bid_raw = _first(raw, BID_FIELDS)

        end_dt = parse_end_date(_first(raw, END_DATE_FIELDS))
        status = self._derive_status(raw, end_dt, now)

        return ItemRecord(
            item_id=item_id,
            location_name=location_name,
            source_url=source_url,
            title=self._clean_text(_first(raw, TITLE_FIELDS)),
            description=self._clean_text(_first(raw, DESCRIPTION_FIELDS)),
            msrp=parse_money(msrp_raw),
            current_bid=parse_money(bid_raw),
            end_date=to_iso(end_dt),
            status=status,
            fetched_at=to_iso(now),
            dom_hash=hash_dom(stable_snippet(raw)),
            auction_id=auction_id,
            image_url=self._build_image_url(raw.get("imageUrl") or raw.get("image")),
            condition=self._clean_text(raw.get("condition")),
            msrp_text=str(msrp_raw) if msrp_raw is not None else None,
            current_bid_text=str(bid_raw) if bid_raw is not None else None,
            location_text=location_text,
            item_id_text=str(raw_item_id),
        )

    def _location_text(self, raw: dict) -> Optional[str]:
        text = _first(raw, LOCATION_FIELDS)
        if text is None and isinstance(raw.get("auctionLocation"), dict):
            text = raw["auctionLocation"].get("nickName")
        return str(text) if text is not None else None

    def _build_source_url(self, raw: dict, auction_id: Optional[str], item_id: str) -> str:
        if auction_id:
            return f"{self.base_url}/itemDetails?idauctions={auction_id}&idItems={item_id}"
        if raw.get("auctionUrl"):
            return str(raw["auctionUrl"])
        raise MalformedRecordError(f"Item {item_id} has no auction id to build a source URL")

    def _build_image_url(self, value) -> Optional[str]:
        if not value:
            return None
        value = str(value)
        if value.startswith("http"):
            return value
        return f"{self.base_url}/{value.lstrip('/')}"

    def _derive_status(self, raw: dict, end_dt: Optional[datetime], now: datetime) -> ItemStatus:
        """Closed flag wins; a future end date means active; anything else is unknown."""
        if any(raw.get(name) for name in CLOSED_FIELDS):
            return ItemStatus.ENDED
        if end_dt is not None and end_dt > now:
            return ItemStatus.ACTIVE
        return ItemStatus.UNKNOWN

    def _clean_text(self, text) -> Optional[str]:
        """Collapse whitespace and drop HTML entities. Empty becomes None."""
        if text is None:
            return None
        text = re.sub(r"&[a-z]+;", " ", str(text))
        text = re.sub(r"\s+", " ", text).strip()
        return text or None


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def normalize_items(raw_items: list[dict], location_hint: Optional[str] = None) -> list[ItemRecord]:
    """Convenience function to normalize a batch of raw items."""
    normalizer = ItemNormalizer()
    return normalizer.normalize_batch(raw_items, location_hint)
