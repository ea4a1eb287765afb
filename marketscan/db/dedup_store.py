"""Listing deduplication, change detection and price history."""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketscan import metrics
from marketscan.db.models import Listing, ListingPriceHistory
from marketscan.errors import PersistenceError

logger = logging.getLogger(__name__)

# Fields whose drift marks a listing CHANGED, mapped to their history field_type.
# Other fields (description, traffic, ...) are refreshed only when one of these moves.
TRACKED_FIELDS: dict[str, str] = {
    "asking_price": "askingPrice",
    "profit_multiple": "profitMultiple",
    "revenue_multiple": "revenueMultiple",
    "listing_status": "listingStatus",
}

# Column scale for each numeric tracked field
_NUMERIC_SCALE = {
    "asking_price": Decimal("0.01"),
    "profit_multiple": Decimal("0.01"),
    "revenue_multiple": Decimal("0.01"),
}

_COPY_FIELDS = (
    "title",
    "url",
    "asking_price",
    "monthly_revenue",
    "monthly_profit",
    "profit_multiple",
    "revenue_multiple",
    "category",
    "industry",
    "listing_status",
    "is_verified",
    "data_quality_score",
    "raw_snapshot",
)


class ChangeKind(str, Enum):
    NEW = "new"
    CHANGED = "changed"
    UNCHANGED = "unchanged"


@dataclass
class ListingRecord:
    """Normalized listing ready for persistence."""

    listing_id: str
    title: Optional[str] = None
    url: Optional[str] = None
    asking_price: Optional[Decimal] = None
    monthly_revenue: Optional[Decimal] = None
    monthly_profit: Optional[Decimal] = None
    profit_multiple: Optional[Decimal] = None
    revenue_multiple: Optional[Decimal] = None
    category: Optional[str] = None
    industry: Optional[str] = None
    listing_status: Optional[str] = None
    is_verified: bool = False
    data_quality_score: Optional[float] = None
    raw_snapshot: dict = field(default_factory=dict)


@dataclass
class SaveStats:
    """Aggregate outcome of one save_listings call."""

    total_processed: int = 0
    new_listings: int = 0
    updated_listings: int = 0
    unchanged_listings: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class FieldChange:
    field_type: str
    old_value: Optional[str]
    new_value: Optional[str]


def _normalize_value(attr: str, value: Any) -> Any:
    """Bring a tracked value to the precision it is stored with."""
    if value is None:
        return None
    scale = _NUMERIC_SCALE.get(attr)
    if scale is None:
        text = str(value).strip()
        return text or None
    try:
        return Decimal(str(value)).quantize(scale)
    except InvalidOperation:
        return None


def diff_tracked(incoming: Any, existing: Any) -> list[FieldChange]:
    """List tracked fields that differ between an incoming record and stored state."""
    changes = []
    for attr, field_type in TRACKED_FIELDS.items():
        old = _normalize_value(attr, getattr(existing, attr, None))
        new = _normalize_value(attr, getattr(incoming, attr, None))
        if old != new:
            changes.append(
                FieldChange(
                    field_type=field_type,
                    old_value=None if old is None else str(old),
                    new_value=None if new is None else str(new),
                )
            )
    return changes


def classify(incoming: Any, existing: Any) -> ChangeKind:
    """
    Classify an incoming record against the stored snapshot.

    Args:
        incoming: Record being ingested
        existing: Current stored row (or earlier record) for the same id, or None

    Returns:
        NEW if nothing is stored, CHANGED if any tracked field differs,
        otherwise UNCHANGED
    """
    if existing is None:
        return ChangeKind.NEW
    if diff_tracked(incoming, existing):
        return ChangeKind.CHANGED
    return ChangeKind.UNCHANGED


class DeduplicationStore:
    """Authoritative listing state with change detection.

    Writes are isolated per insert chunk and per updated record rather than
    locked. Two concurrent batches carrying the same listing_id can both see
    it as absent and both insert; clean_duplicates() repairs that.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        chunk_size: int = 50,
        health_monitor=None,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self._session_factory = session_factory
        self.chunk_size = chunk_size
        self.health_monitor = health_monitor

    def _report(self, error: Exception, **context):
        if self.health_monitor is not None:
            self.health_monitor.record_error(error, {"component": "dedup_store", **context})

    async def _load_existing(self, listing_ids: set[str]) -> dict[str, Listing]:
        """Fetch the current snapshot for each id in a single query."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Listing)
                .where(Listing.listing_id.in_(listing_ids))
                .order_by(Listing.scraped_at.desc(), Listing.id.desc())
            )
            current: dict[str, Listing] = {}
            for row in result.scalars():
                current.setdefault(row.listing_id, row)
            return current

    async def save_listings(self, listings: Sequence[ListingRecord]) -> SaveStats:
        """
        Classify and persist a batch of listings.

        NEW records are inserted in chunks of chunk_size; a failing chunk is
        counted in errors and the remaining chunks still run. CHANGED records
        are updated one transaction each, with their history rows written
        before the update. UNCHANGED records are not touched.

        Raises:
            PersistenceError: If existing state cannot be read, or every write
                in the batch failed
        """
        stats = SaveStats(total_processed=len(listings))
        if not listings:
            return stats

        ids = {record.listing_id for record in listings}
        try:
            existing = await self._load_existing(ids)
        except SQLAlchemyError as e:
            self._report(e, operation="load_existing")
            raise PersistenceError(f"Could not read existing listings: {e}") from e

        new_records: list[ListingRecord] = []
        changed: list[tuple[ListingRecord, list[FieldChange]]] = []
        latest: dict[str, Any] = dict(existing)

        for record in listings:
            prior = latest.get(record.listing_id)
            kind = classify(record, prior)
            if kind is ChangeKind.NEW:
                new_records.append(record)
            elif kind is ChangeKind.CHANGED:
                changed.append((record, diff_tracked(record, prior)))
            else:
                stats.unchanged_listings += 1
            # Later duplicates in the same batch compare against this occurrence
            latest[record.listing_id] = record

        now = datetime.utcnow()
        for start in range(0, len(new_records), self.chunk_size):
            chunk = new_records[start:start + self.chunk_size]
            try:
                await self._insert_chunk(chunk, now)
                stats.new_listings += len(chunk)
            except SQLAlchemyError as e:
                stats.errors += len(chunk)
                logger.error(f"Insert chunk at offset {start} failed ({len(chunk)} listings): {e}")
                self._report(e, operation="insert_chunk", offset=start, size=len(chunk))

        for record, changes in changed:
            try:
                updated = await self._apply_update(record, changes, now)
            except SQLAlchemyError as e:
                stats.errors += 1
                logger.error(f"Update of listing {record.listing_id} failed: {e}")
                self._report(e, operation="update", listing_id=record.listing_id)
                continue
            if updated:
                stats.updated_listings += 1
            else:
                stats.errors += 1
                logger.warning(f"Listing {record.listing_id} vanished before update")

        metrics.record_persistence(
            stats.new_listings, stats.updated_listings, stats.unchanged_listings, stats.errors
        )
        logger.info(
            "Saved listings batch: %d processed, %d new, %d updated, %d unchanged, %d errors",
            stats.total_processed,
            stats.new_listings,
            stats.updated_listings,
            stats.unchanged_listings,
            stats.errors,
        )

        attempted = len(new_records) + len(changed)
        if attempted and stats.errors == attempted:
            raise PersistenceError(f"All {attempted} listing writes failed")
        return stats

    async def _insert_chunk(self, chunk: list[ListingRecord], now: datetime):
        async with self._session_factory() as session:
            for record in chunk:
                row = Listing(listing_id=record.listing_id, scraped_at=now, last_updated=now)
                for name in _COPY_FIELDS:
                    setattr(row, name, getattr(record, name))
                session.add(row)
            await session.commit()

    async def _apply_update(
        self, record: ListingRecord, changes: list[FieldChange], now: datetime
    ) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(Listing)
                    .where(Listing.listing_id == record.listing_id)
                    .order_by(Listing.scraped_at.desc(), Listing.id.desc())
                    .limit(1)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    return False

                for change in changes:
                    session.add(
                        ListingPriceHistory(
                            listing_id=record.listing_id,
                            field_type=change.field_type,
                            old_value=change.old_value,
                            new_value=change.new_value,
                            changed_at=now,
                        )
                    )
                await session.flush()

                for name in _COPY_FIELDS:
                    setattr(row, name, getattr(record, name))
                row.last_updated = now
        return True

    async def upsert_listing(self, record: ListingRecord) -> ChangeKind:
        """Persist a single listing and report how it was classified."""
        stats = await self.save_listings([record])
        if stats.new_listings:
            return ChangeKind.NEW
        if stats.updated_listings:
            return ChangeKind.CHANGED
        return ChangeKind.UNCHANGED

    async def clean_duplicates(self) -> int:
        """
        Keep the most recently scraped row per listing_id and delete the rest.

        Returns:
            Number of rows deleted
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(Listing.id, Listing.listing_id).order_by(
                    Listing.scraped_at.desc(), Listing.id.desc()
                )
            )
            seen: set[str] = set()
            duplicate_ids: list[int] = []
            for row_id, listing_id in result.all():
                if listing_id in seen:
                    duplicate_ids.append(row_id)
                else:
                    seen.add(listing_id)

            for start in range(0, len(duplicate_ids), 500):
                await session.execute(
                    delete(Listing).where(Listing.id.in_(duplicate_ids[start:start + 500]))
                )
            await session.commit()

        if duplicate_ids:
            logger.info(f"Removed {len(duplicate_ids)} duplicate listing rows")
        return len(duplicate_ids)

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Listing)
                .where(Listing.listing_id == listing_id)
                .order_by(Listing.scraped_at.desc(), Listing.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_price_history(self, listing_id: str) -> list[ListingPriceHistory]:
        """Return history entries for a listing, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ListingPriceHistory)
                .where(ListingPriceHistory.listing_id == listing_id)
                .order_by(ListingPriceHistory.changed_at, ListingPriceHistory.id)
            )
            return list(result.scalars())
