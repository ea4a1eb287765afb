"""SQLAlchemy database models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Listing(Base):
    """Current snapshot of one marketplace listing.

    listing_id is not declared unique at the database level: concurrent
    batches may race on the same id, and clean_duplicates() repairs that.
    """

    __tablename__ = "listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    listing_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    asking_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    monthly_revenue: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    monthly_profit: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    profit_multiple: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    revenue_multiple: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    industry: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    listing_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    data_quality_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    raw_snapshot: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)
    scraped_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False, index=True
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class ListingPriceHistory(Base):
    """Append-only log of tracked field changes."""

    __tablename__ = "listing_price_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    listing_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    field_type: Mapped[str] = mapped_column(String(32), nullable=False)  # askingPrice, profitMultiple, ...
    old_value: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    new_value: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class ScrapeJob(Base):
    """Mirror of queue jobs for operational tooling."""

    __tablename__ = "scrape_jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)  # uuid hex
    job_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # queued, active, completed, failed
    priority: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    config: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)
    attempts_made: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    result: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Category(Base):
    """Marketplace category tracked for scanning."""

    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    industry: Mapped[str] = mapped_column(String(64), nullable=False)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    listing_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_scanned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class IndustryStatistics(Base):
    """Daily aggregate of listings for one industry."""

    __tablename__ = "industry_statistics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    industry: Mapped[str] = mapped_column(String(64), nullable=False)
    stat_date: Mapped[date] = mapped_column(Date, nullable=False)
    listing_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_asking_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    median_asking_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    min_asking_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    max_asking_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    avg_profit_multiple: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    median_profit_multiple: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    avg_revenue_multiple: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    median_revenue_multiple: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    verified_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("industry", "stat_date", name="uq_industry_stat_date"),
    )


class HealthSnapshot(Base):
    """Periodically flushed HealthMonitor state."""

    __tablename__ = "health_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    metrics: Mapped[dict] = mapped_column(JsonType, nullable=False)
    alerts: Mapped[Optional[list]] = mapped_column(JsonType, nullable=True)
    recommendations: Mapped[Optional[list]] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False, index=True
    )
