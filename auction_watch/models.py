"""
Data models for Auction Watch.

Defines the canonical dataclasses that the normalizer produces, the store
persists and the rule engine evaluates.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Optional
from enum import Enum

from .errors import ConfigurationError


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as ISO-8601 UTC with seconds precision."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_iso(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class ItemStatus(str, Enum):
    """Tri-state auction status. UNKNOWN until the source confirms."""
    ACTIVE = "active"
    ENDED = "ended"
    UNKNOWN = "unknown"


@dataclass
class ItemRecord:
    """
    Canonical representation of one auction item at one location.

    Keyed by (item_id, location_name). Prices are either a non-negative
    number or None; they are never filled in when the source omits them.
    """
    item_id: str
    location_name: str
    source_url: str

    title: Optional[str] = None
    description: Optional[str] = None

    # Pricing
    msrp: Optional[float] = None
    current_bid: Optional[float] = None

    # Timing (ISO-8601 strings)
    end_date: Optional[str] = None
    status: ItemStatus = ItemStatus.UNKNOWN
    fetched_at: str = field(default_factory=lambda: to_iso(utc_now()))
    dom_hash: Optional[str] = None

    # Extra upstream details
    auction_id: Optional[str] = None
    image_url: Optional[str] = None
    condition: Optional[str] = None

    # Raw echoes for auditing the parsers
    msrp_text: Optional[str] = None
    current_bid_text: Optional[str] = None
    location_text: Optional[str] = None
    item_id_text: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.item_id, self.location_name)

    def end_datetime(self) -> Optional[datetime]:
        return parse_iso(self.end_date)

    def time_left_minutes(self, now: Optional[datetime] = None) -> Optional[int]:
        """Whole minutes until the auction ends (negative once ended), or None."""
        end = self.end_datetime()
        if end is None:
            return None
        now = now or utc_now()
        return int((end - now).total_seconds() // 60)

    def to_dict(self) -> dict:
        """Convert to dictionary for storage."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ItemRecord":
        """Create from dictionary (e.g., from database)."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = ItemStatus(data.get("status") or ItemStatus.UNKNOWN.value)
        return cls(**values)

    def copy(self, **changes) -> "ItemRecord":
        return replace(self, **changes)


@dataclass
class EndedAuctionItem:
    """
    Snapshot of an item taken when its end date was seen to be in the past.

    final_price is the last known current_bid and stays None if the bid
    was never known.
    """
    item: ItemRecord
    ended_at: str = field(default_factory=lambda: to_iso(utc_now()))
    final_price: Optional[float] = None

    @property
    def item_id(self) -> str:
        return self.item.item_id

    def to_dict(self) -> dict:
        data = self.item.to_dict()
        data["ended_at"] = self.ended_at
        data["final_price"] = self.final_price
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "EndedAuctionItem":
        return cls(
            item=ItemRecord.from_dict(data),
            ended_at=data.get("ended_at") or to_iso(utc_now()),
            final_price=data.get("final_price"),
        )


@dataclass
class CrawlerRule:
    """
    A user-defined persistent filter checked on its own timer.

    An empty locations list means "all locations".
    """
    id: str
    name: str
    search_query: str = ""
    locations: list[str] = field(default_factory=list)
    max_bid_price: float = 0.0
    max_time_left_minutes: int = 60
    check_interval_minutes: int = 5
    is_active: bool = True
    last_checked: Optional[str] = None
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))
    updated_at: str = field(default_factory=lambda: to_iso(utc_now()))

    def __post_init__(self):
        # Set semantics with a stable order
        seen = []
        for location in self.locations or []:
            location = str(location).strip()
            if location and location not in seen:
                seen.append(location)
        self.locations = seen

    def validate(self) -> None:
        """Reject invalid rule fields. Values are never clamped."""
        if not self.id or not str(self.id).strip():
            raise ConfigurationError("Rule id is required")
        if not self.name or not self.name.strip():
            raise ConfigurationError(f"Rule {self.id}: name is required")
        if self.check_interval_minutes is None or self.check_interval_minutes <= 0:
            raise ConfigurationError(
                f"Rule {self.id}: check_interval_minutes must be positive, "
                f"got {self.check_interval_minutes}"
            )
        if self.max_bid_price is None or self.max_bid_price < 0:
            raise ConfigurationError(
                f"Rule {self.id}: max_bid_price must be non-negative, got {self.max_bid_price}"
            )
        if self.max_time_left_minutes is None or self.max_time_left_minutes <= 0:
            raise ConfigurationError(
                f"Rule {self.id}: max_time_left_minutes must be positive, "
                f"got {self.max_time_left_minutes}"
            )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "search_query": self.search_query,
            "locations": list(self.locations),
            "max_bid_price": self.max_bid_price,
            "max_time_left_minutes": self.max_time_left_minutes,
            "check_interval_minutes": self.check_interval_minutes,
            "is_active": self.is_active,
            "last_checked": self.last_checked,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CrawlerRule":
        return cls(
            id=data["id"],
            name=data["name"],
            search_query=data.get("search_query") or "",
            locations=data.get("locations") or [],
            max_bid_price=float(data.get("max_bid_price", 0.0)),
            max_time_left_minutes=int(data.get("max_time_left_minutes", 60)),
            check_interval_minutes=int(data.get("check_interval_minutes", 5)),
            is_active=bool(data.get("is_active", True)),
            last_checked=data.get("last_checked"),
            created_at=data.get("created_at") or to_iso(utc_now()),
            updated_at=data.get("updated_at") or to_iso(utc_now()),
        )


@dataclass
class StoredResult:
    """
    A rule match kept in the rolling results buffer.

    One entry per (rule_id, item_id); repeat matches refresh the snapshot.
    """
    id: str
    rule_id: str
    rule_name: str
    item: ItemRecord
    time_left_minutes: Optional[int]
    matched_at: datetime = field(default_factory=utc_now)
    is_tracked: bool = False
    is_watched: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.rule_id, self.item.item_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "item": self.item.to_dict(),
            "time_left_minutes": self.time_left_minutes,
            "matched_at": to_iso(self.matched_at),
            "is_tracked": self.is_tracked,
            "is_watched": self.is_watched,
        }
