"""
Embedded database module.

Handles all persistent state in one local SQLite file via SQLAlchemy:
- items: live index, one row per (item_id, location_name)
- ended_items: archive of auctions whose end date has passed
- crawler_rules: durable rule definitions

The indexer and the rule engine receive an ItemStore instance; nothing in
the package imports a global database except the service wiring.
"""

import logging
import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Float,
    Index,
    Integer,
    JSON,
    Text,
    create_engine,
    delete,
    func,
    or_,
    select,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import get_store_config
from .errors import MalformedRecordError, StoreError
from .models import (
    CrawlerRule,
    EndedAuctionItem,
    ItemRecord,
    ItemStatus,
    parse_iso,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

Base = declarative_base()

REQUIRED_ITEM_FIELDS = ("item_id", "location_name", "source_url")
ITEM_KEY_FIELDS = ("item_id", "location_name")


# =============================================================================
# TABLES
# =============================================================================

class _ItemColumns:
    """Columns shared by the live index and the archive."""
    title = Column(Text)
    description = Column(Text)
    msrp = Column(Float)
    current_bid = Column(Float)
    end_date = Column(Text)
    status = Column(Text, nullable=False, default=ItemStatus.UNKNOWN.value)
    source_url = Column(Text, nullable=False)
    fetched_at = Column(Text, nullable=False)
    dom_hash = Column(Text)
    auction_id = Column(Text)
    image_url = Column(Text)
    condition = Column(Text)
    msrp_text = Column(Text)
    current_bid_text = Column(Text)
    location_text = Column(Text)
    item_id_text = Column(Text)


class ItemRow(_ItemColumns, Base):
    __tablename__ = "items"
    __table_args__ = (
        CheckConstraint("status IN ('active','ended','unknown')", name="ck_items_status"),
        Index("idx_items_status", "status"),
        Index("idx_items_location", "location_name"),
        Index("idx_items_bid", "current_bid"),
        Index("idx_items_end_date", "end_date"),
    )

    item_id = Column(Text, primary_key=True)
    location_name = Column(Text, primary_key=True)


class EndedItemRow(_ItemColumns, Base):
    __tablename__ = "ended_items"
    __table_args__ = (
        Index("idx_ended_location", "location_name"),
        Index("idx_ended_at", "ended_at"),
    )

    # One archive entry per upstream item
    item_id = Column(Text, primary_key=True)
    location_name = Column(Text, nullable=False)
    ended_at = Column(Text, nullable=False)
    final_price = Column(Float)


class RuleRow(Base):
    __tablename__ = "crawler_rules"

    id = Column(Text, primary_key=True)
    name = Column(Text, nullable=False)
    search_query = Column(Text, nullable=False, default="")
    locations = Column(JSON, nullable=False, default=list)
    max_bid_price = Column(Float, nullable=False)
    max_time_left_minutes = Column(Integer, nullable=False)
    check_interval_minutes = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_checked = Column(Text)
    created_at = Column(Text, nullable=False)
    updated_at = Column(Text, nullable=False)


def _row_to_dict(row) -> dict:
    return {c.name: getattr(row, c.name) for c in row.__table__.columns}


# =============================================================================
# STORAGE INTERFACES
# =============================================================================

class ItemStore(ABC):
    """Storage interface used by the indexer and the rule engine."""

    @abstractmethod
    def upsert_item(self, record: ItemRecord) -> None:
        ...

    @abstractmethod
    def get_item(self, item_id: str, location_name: str) -> Optional[ItemRecord]:
        ...

    @abstractmethod
    def search_items(
        self,
        query: str = "",
        location: Optional[str] = None,
        min_bid: Optional[float] = None,
        max_bid: Optional[float] = None,
        page: int = 1,
        limit: int = 100,
    ) -> dict:
        ...

    @abstractmethod
    def get_active_items(self, location: Optional[str] = None) -> list[ItemRecord]:
        ...

    @abstractmethod
    def get_items_ending_soon(self, hours: float = 2) -> list[ItemRecord]:
        ...

    @abstractmethod
    def update_item_status(self, item_id: str, location_name: str, status: ItemStatus) -> bool:
        ...

    @abstractmethod
    def get_reconcile_candidates(self) -> list[ItemRecord]:
        ...

    @abstractmethod
    def archive_item(
        self, item_id: str, location_name: str, ended_at: Optional[datetime] = None
    ) -> bool:
        ...

    @abstractmethod
    def get_all_ended_items(self) -> list[EndedAuctionItem]:
        ...

    @abstractmethod
    def get_items_needing_enrichment(self, limit: int = 100) -> list[ItemRecord]:
        ...


class RuleRepository(ABC):
    """Durable storage for crawler rule definitions."""

    @abstractmethod
    def save_rule(self, rule: CrawlerRule) -> None:
        ...

    @abstractmethod
    def get_rule(self, rule_id: str) -> Optional[CrawlerRule]:
        ...

    @abstractmethod
    def list_rules(self, active_only: bool = False) -> list[CrawlerRule]:
        ...

    @abstractmethod
    def delete_rule(self, rule_id: str) -> bool:
        ...

    @abstractmethod
    def mark_rule_checked(self, rule_id: str, checked_at: Optional[datetime] = None) -> None:
        ...


# =============================================================================
# SQLITE IMPLEMENTATION
# =============================================================================

class Database(ItemStore, RuleRepository):
    """
    SQLite-backed store.

    Every public method runs in its own short transaction. Writers only
    upsert, so the indexer and rule checks can share one database without
    further locking.
    """

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        """Create the engine and make sure the schema exists."""
        config = get_store_config()
        self.database_url = database_url or config.database_url
        echo = config.echo if echo is None else echo

        if not self.database_url.startswith("sqlite"):
            raise StoreError(f"Only embedded SQLite databases are supported: {self.database_url}")

        self._engine = create_engine(self.database_url, echo=echo, **self._engine_options())
        self._Session = sessionmaker(bind=self._engine, expire_on_commit=False)
        try:
            Base.metadata.create_all(self._engine)
        except OperationalError as e:
            raise StoreError(f"Cannot initialize database {self.database_url}: {e}") from e
        logger.info(f"Database ready: {self.database_url}")

    def _engine_options(self) -> dict:
        options = {"connect_args": {"check_same_thread": False}}
        path = self.database_url.split("///", 1)[1] if "///" in self.database_url else ""
        if not path or path == ":memory:":
            # A single shared connection keeps the in-memory database alive
            options["poolclass"] = StaticPool
        else:
            directory = os.path.dirname(os.path.abspath(path))
            try:
                os.makedirs(directory, exist_ok=True)
            except OSError as e:
                raise StoreError(f"Cannot create database directory {directory}: {e}") from e
        return options

    @contextmanager
    def _session(self):
        session = self._Session()
        try:
            yield session
            session.commit()
        except OperationalError as e:
            session.rollback()
            raise StoreError(f"Database operation failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def close(self) -> None:
        """Dispose of the connection pool."""
        self._engine.dispose()

    # =========================================================================
    # ITEM OPERATIONS
    # =========================================================================

    def upsert_item(self, record: ItemRecord) -> None:
        """
        Insert or update an item keyed by (item_id, location_name).

        Every mutable column is overwritten (last write wins), so calling
        this twice with the same record leaves the same row.

        Raises:
            MalformedRecordError: a required field is missing
        """
        data = record.to_dict()
        missing = [name for name in REQUIRED_ITEM_FIELDS if not data.get(name)]
        if missing:
            raise MalformedRecordError(f"Item record missing required fields: {', '.join(missing)}")

        table = ItemRow.__table__
        stmt = sqlite_insert(table).values(**data)
        updates = {c.name: stmt.excluded[c.name] for c in table.columns if c.name not in ITEM_KEY_FIELDS}
        stmt = stmt.on_conflict_do_update(index_elements=list(ITEM_KEY_FIELDS), set_=updates)

        with self._session() as session:
            session.execute(stmt)
        logger.debug(f"Upserted item {record.item_id} @ {record.location_name}")

    def get_item(self, item_id: str, location_name: str) -> Optional[ItemRecord]:
        """Get an item by its composite key."""
        with self._session() as session:
            row = session.get(ItemRow, (item_id, location_name))
            return ItemRecord.from_dict(_row_to_dict(row)) if row else None

    def search_items(
        self,
        query: str = "",
        location: Optional[str] = None,
        min_bid: Optional[float] = None,
        max_bid: Optional[float] = None,
        page: int = 1,
        limit: int = 100,
    ) -> dict:
        """
        Search active items.

        Args:
            query: Case-insensitive substring of title or description
            location: Exact canonical location name
            min_bid / max_bid: Inclusive current_bid range
            page: 1-based page number
            limit: Page size

        Returns:
            {"items": [ItemRecord, ...], "total": int}, ordered by
            current_bid descending (unknown bids last)
        """
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")
        page = max(page, 1)

        conditions = [ItemRow.status == ItemStatus.ACTIVE.value]
        needle = (query or "").strip().lower()
        if needle:
            conditions.append(or_(
                func.lower(ItemRow.title).contains(needle, autoescape=True),
                func.lower(ItemRow.description).contains(needle, autoescape=True),
            ))
        if location:
            conditions.append(ItemRow.location_name == location)
        if min_bid is not None:
            conditions.append(ItemRow.current_bid >= min_bid)
        if max_bid is not None:
            conditions.append(ItemRow.current_bid <= max_bid)

        with self._session() as session:
            total = session.scalar(select(func.count()).select_from(ItemRow).where(*conditions))
            rows = session.scalars(
                select(ItemRow)
                .where(*conditions)
                .order_by(
                    ItemRow.current_bid.is_(None),
                    ItemRow.current_bid.desc(),
                    ItemRow.item_id,
                    ItemRow.location_name,
                )
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            items = [ItemRecord.from_dict(_row_to_dict(row)) for row in rows]

        return {"items": items, "total": total or 0}

    def get_active_items(self, location: Optional[str] = None) -> list[ItemRecord]:
        """Get active items, optionally for one location."""
        stmt = select(ItemRow).where(ItemRow.status == ItemStatus.ACTIVE.value)
        if location:
            stmt = stmt.where(ItemRow.location_name == location)
        stmt = stmt.order_by(ItemRow.current_bid.is_(None), ItemRow.current_bid.desc(), ItemRow.item_id)

        with self._session() as session:
            return [ItemRecord.from_dict(_row_to_dict(row)) for row in session.scalars(stmt)]

    def get_items_ending_soon(self, hours: float = 2) -> list[ItemRecord]:
        """Active items whose end date falls within the next N hours, soonest first."""
        now = utc_now()
        cutoff = now + timedelta(hours=hours)
        soon = []
        for item in self.get_active_items():
            end = item.end_datetime()
            if end is not None and now <= end <= cutoff:
                soon.append(item)
        soon.sort(key=lambda item: item.end_datetime())
        return soon

    def update_item_status(self, item_id: str, location_name: str, status: ItemStatus) -> bool:
        """
        Set an item's status without touching its other fields.

        Returns:
            True if the item exists
        """
        status = ItemStatus(status)
        with self._session() as session:
            row = session.get(ItemRow, (item_id, location_name))
            if row is None:
                return False
            row.status = status.value
            row.fetched_at = to_iso(utc_now())
        logger.info(f"Item {item_id} @ {location_name} status -> {status.value}")
        return True

    def get_reconcile_candidates(self) -> list[ItemRecord]:
        """Items not yet ended that carry an end date."""
        stmt = select(ItemRow).where(
            ItemRow.status.in_([ItemStatus.ACTIVE.value, ItemStatus.UNKNOWN.value]),
            ItemRow.end_date.is_not(None),
        )
        with self._session() as session:
            return [ItemRecord.from_dict(_row_to_dict(row)) for row in session.scalars(stmt)]

    def get_items_needing_enrichment(self, limit: int = 100) -> list[ItemRecord]:
        """Live items still missing a title, description or msrp, most recent first."""
        stmt = (
            select(ItemRow)
            .where(
                ItemRow.status != ItemStatus.ENDED.value,
                or_(ItemRow.title.is_(None), ItemRow.description.is_(None), ItemRow.msrp.is_(None)),
            )
            .order_by(ItemRow.fetched_at.desc())
            .limit(limit)
        )
        with self._session() as session:
            return [ItemRecord.from_dict(_row_to_dict(row)) for row in session.scalars(stmt)]

    # =========================================================================
    # ENDED ARCHIVE OPERATIONS
    # =========================================================================

    def archive_item(
        self, item_id: str, location_name: str, ended_at: Optional[datetime] = None
    ) -> bool:
        """
        Move an item into the ended archive.

        The archive insert and the status change happen in one transaction,
        so readers see the item either live or ended, never neither. The
        archive ignores an item_id it already holds.

        Returns:
            True if a new archive entry was created
        """
        with self._session() as session:
            row = session.get(ItemRow, (item_id, location_name))
            if row is None:
                return False

            snapshot = _row_to_dict(row)
            snapshot["status"] = ItemStatus.ENDED.value
            snapshot["ended_at"] = to_iso(ended_at or utc_now())
            snapshot["final_price"] = row.current_bid

            stmt = (
                sqlite_insert(EndedItemRow.__table__)
                .values(**snapshot)
                .on_conflict_do_nothing(index_elements=["item_id"])
            )
            created = session.execute(stmt).rowcount == 1
            row.status = ItemStatus.ENDED.value

        if created:
            logger.info(f"Archived ended item {item_id} @ {location_name} (final price {snapshot['final_price']})")
        else:
            logger.debug(f"Item {item_id} already archived, marked {location_name} row ended")
        return created

    def get_ended_item(self, item_id: str) -> Optional[EndedAuctionItem]:
        with self._session() as session:
            row = session.get(EndedItemRow, item_id)
            return EndedAuctionItem.from_dict(_row_to_dict(row)) if row else None

    def get_all_ended_items(self) -> list[EndedAuctionItem]:
        """All archived items, most recently ended first."""
        stmt = select(EndedItemRow).order_by(EndedItemRow.ended_at.desc(), EndedItemRow.item_id)
        with self._session() as session:
            return [EndedAuctionItem.from_dict(_row_to_dict(row)) for row in session.scalars(stmt)]

    def search_ended_items(
        self, query: str = "", locations: Optional[list[str]] = None
    ) -> list[EndedAuctionItem]:
        """
        Search the archive by text and location.

        Locations match as case-insensitive substrings of the stored
        location name or raw location text.
        """
        needle = (query or "").strip().lower()
        wanted = [loc.lower() for loc in (locations or []) if loc]
        results = []

        for ended in self.get_all_ended_items():
            item = ended.item
            text = f"{item.title or ''} {item.description or ''}".lower()
            if needle and needle not in text:
                continue
            if wanted:
                where = f"{item.location_name} {item.location_text or ''}".lower()
                if not any(loc in where for loc in wanted):
                    continue
            results.append(ended)

        return results

    def get_ended_item_stats(self) -> dict:
        """Count and price summary of the archive (unknown prices excluded)."""
        ended = self.get_all_ended_items()
        prices = [e.final_price for e in ended if e.final_price is not None]
        total_value = sum(prices)
        return {
            "total_ended": len(ended),
            "priced": len(prices),
            "total_value": round(total_value, 2),
            "avg_price": round(total_value / len(prices), 2) if prices else None,
            "min_price": min(prices) if prices else None,
            "max_price": max(prices) if prices else None,
        }

    def remove_ended_item(self, item_id: str) -> bool:
        with self._session() as session:
            result = session.execute(delete(EndedItemRow).where(EndedItemRow.item_id == item_id))
            return result.rowcount > 0

    def clear_ended_items(self) -> int:
        with self._session() as session:
            count = session.execute(delete(EndedItemRow)).rowcount
        logger.info(f"Cleared {count} ended items")
        return count

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def get_stats(self) -> dict:
        """Row counts by status plus active items per location."""
        with self._session() as session:
            by_status = dict(
                session.execute(select(ItemRow.status, func.count()).group_by(ItemRow.status)).all()
            )
            by_location = dict(
                session.execute(
                    select(ItemRow.location_name, func.count())
                    .where(ItemRow.status == ItemStatus.ACTIVE.value)
                    .group_by(ItemRow.location_name)
                ).all()
            )
            archived = session.scalar(select(func.count()).select_from(EndedItemRow))

        return {
            "total_items": sum(by_status.values()),
            "active_items": by_status.get(ItemStatus.ACTIVE.value, 0),
            "ended_items": by_status.get(ItemStatus.ENDED.value, 0),
            "unknown_items": by_status.get(ItemStatus.UNKNOWN.value, 0),
            "archived_items": archived or 0,
            "by_location": by_location,
        }

    def cleanup(self, days_old: int = 30) -> int:
        """Delete ended rows from the live index not refreshed for N days."""
        cutoff = utc_now() - timedelta(days=days_old)
        stale = []
        with self._session() as session:
            rows = session.scalars(select(ItemRow).where(ItemRow.status == ItemStatus.ENDED.value))
            for row in rows:
                fetched = parse_iso(row.fetched_at)
                if fetched is None or fetched < cutoff:
                    stale.append(row)
            for row in stale:
                session.delete(row)
        logger.info(f"Cleaned up {len(stale)} old records")
        return len(stale)

    # =========================================================================
    # RULE OPERATIONS
    # =========================================================================

    def save_rule(self, rule: CrawlerRule) -> None:
        """Insert or update a rule definition."""
        with self._session() as session:
            session.merge(RuleRow(**rule.to_dict()))
        logger.debug(f"Saved rule {rule.id}")

    def get_rule(self, rule_id: str) -> Optional[CrawlerRule]:
        with self._session() as session:
            row = session.get(RuleRow, rule_id)
            return CrawlerRule.from_dict(_row_to_dict(row)) if row else None

    def list_rules(self, active_only: bool = False) -> list[CrawlerRule]:
        stmt = select(RuleRow).order_by(RuleRow.created_at, RuleRow.id)
        if active_only:
            stmt = stmt.where(RuleRow.is_active.is_(True))
        with self._session() as session:
            return [CrawlerRule.from_dict(_row_to_dict(row)) for row in session.scalars(stmt)]

    def delete_rule(self, rule_id: str) -> bool:
        with self._session() as session:
            result = session.execute(delete(RuleRow).where(RuleRow.id == rule_id))
            deleted = result.rowcount > 0
        if deleted:
            logger.info(f"Deleted rule {rule_id}")
        return deleted

    def mark_rule_checked(self, rule_id: str, checked_at: Optional[datetime] = None) -> None:
        with self._session() as session:
            row = session.get(RuleRow, rule_id)
            if row is not None:
                row.last_checked = to_iso(checked_at or utc_now())


# Global database instance (lazy loaded)
_db: Optional[Database] = None


def get_db() -> Database:
    """Get database instance (singleton)."""
    global _db
    if _db is None:
        _db = Database()
    return _db
