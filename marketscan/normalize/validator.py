"""Schema and plausibility checks for scraped listings."""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from marketscan.config import DataQualityConfig
from marketscan.db.dedup_store import ListingRecord
from marketscan.ingest.base import RawListing
from marketscan.normalize.categories import industry_for

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Outcome of validating one raw listing."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    data_quality_score: int = 100


@dataclass
class InvalidListing:
    listing: RawListing
    validation: ValidationResult


def _clean_string(value: Optional[str]) -> str:
    if not value:
        return ""
    return re.sub(r"\s+", " ", value.strip())


def _to_decimal(value: Optional[float]) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(round(value, 2)))


def _json_safe(value):
    if isinstance(value, (Decimal,)):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


class ListingValidator:
    """Validates raw listings and normalizes them into ListingRecords."""

    def __init__(self, config: Optional[DataQualityConfig] = None):
        self.config = config or DataQualityConfig()

    def validate(self, listing: RawListing) -> ValidationResult:
        """
        Run schema and plausibility checks.

        Errors make the listing invalid; warnings only lower its data quality
        score.

        Args:
            listing: Raw extracted listing

        Returns:
            ValidationResult with errors, warnings and a 0-100 quality score
        """
        errors: list[str] = []
        warnings: list[str] = []
        score = 100

        for name in self.config.required_fields:
            if not getattr(listing, name, None):
                errors.append(f"Missing required field: {name}")
                score -= 20

        price = listing.asking_price
        if price:
            if price < self.config.min_asking_price:
                errors.append(f"Asking price too low: ${price:,.0f}")
                score -= 15
            elif price > self.config.max_asking_price:
                errors.append(f"Asking price too high: ${price:,.0f}")
                score -= 15

        if listing.monthly_revenue and listing.annual_revenue:
            variance = abs(listing.monthly_revenue * 12 - listing.annual_revenue) / listing.annual_revenue
            if variance > 0.2:
                warnings.append("Annual revenue doesn't match monthly revenue * 12")
                score -= 5

        if listing.monthly_profit and listing.annual_profit:
            variance = abs(listing.monthly_profit * 12 - listing.annual_profit) / listing.annual_profit
            if variance > 0.2:
                warnings.append("Annual profit doesn't match monthly profit * 12")
                score -= 5

        if listing.monthly_revenue and listing.monthly_profit:
            margin = listing.monthly_profit / listing.monthly_revenue
            if margin > 1:
                errors.append("Profit exceeds revenue")
                score -= 20
            elif margin > 0.9:
                warnings.append("Unusually high profit margin (>90%)")
                score -= 5

        if listing.view_count == 0 and listing.bid_count:
            warnings.append("Bids without views is suspicious")
            score -= 10

        if (
            listing.site_age_months is not None
            and 0 < listing.site_age_months < 3
            and (listing.monthly_revenue or 0) > 50000
        ):
            warnings.append("Very high revenue for new site")
            score -= 10

        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            data_quality_score=max(0, score),
        )

    def calculate_multiples(self, listing: RawListing) -> tuple[Optional[float], Optional[float]]:
        """
        Derive (profit_multiple, revenue_multiple) from asking price and annual figures.

        Multiples shown on the page take precedence over derived ones.
        """
        annual_revenue = listing.annual_revenue or (
            listing.monthly_revenue * 12 if listing.monthly_revenue else None
        )
        annual_profit = listing.annual_profit or (
            listing.monthly_profit * 12 if listing.monthly_profit else None
        )

        revenue_multiple = listing.revenue_multiple
        if revenue_multiple is None and listing.asking_price and annual_revenue and annual_revenue > 0:
            revenue_multiple = listing.asking_price / annual_revenue

        profit_multiple = listing.profit_multiple
        if profit_multiple is None and listing.asking_price and annual_profit and annual_profit > 0:
            profit_multiple = listing.asking_price / annual_profit

        cfg = self.config
        if revenue_multiple is not None and not (
            cfg.min_revenue_multiple <= revenue_multiple <= cfg.max_revenue_multiple
        ):
            logger.warning(
                f"Revenue multiple out of range for {listing.listing_id}: {revenue_multiple:.2f}"
            )
        if profit_multiple is not None and not (
            cfg.min_profit_multiple <= profit_multiple <= cfg.max_profit_multiple
        ):
            logger.warning(
                f"Profit multiple out of range for {listing.listing_id}: {profit_multiple:.2f}"
            )

        return profit_multiple, revenue_multiple

    def normalize(self, listing: RawListing, validation: Optional[ValidationResult] = None) -> ListingRecord:
        """Convert a validated raw listing into a persistable record."""
        validation = validation or self.validate(listing)
        profit_multiple, revenue_multiple = self.calculate_multiples(listing)
        category = _clean_string(listing.category) or "Unknown"

        snapshot = {
            "listing_id": listing.listing_id,
            "title": listing.title,
            "url": listing.url,
            "asking_price": listing.asking_price,
            "monthly_revenue": listing.monthly_revenue,
            "monthly_profit": listing.monthly_profit,
            "annual_revenue": listing.annual_revenue,
            "annual_profit": listing.annual_profit,
            "profit_multiple": listing.profit_multiple,
            "revenue_multiple": listing.revenue_multiple,
            "category": listing.category,
            "listing_status": listing.listing_status,
            "is_verified": listing.is_verified,
            "view_count": listing.view_count,
            "bid_count": listing.bid_count,
            "site_age_months": listing.site_age_months,
            "description": listing.description,
            "scraped_at": listing.scraped_at,
            "warnings": validation.warnings,
            **listing.extra,
        }

        return ListingRecord(
            listing_id=str(listing.listing_id),
            title=_clean_string(listing.title),
            url=listing.url,
            asking_price=_to_decimal(listing.asking_price),
            monthly_revenue=_to_decimal(listing.monthly_revenue or 0),
            monthly_profit=_to_decimal(listing.monthly_profit or 0),
            profit_multiple=_to_decimal(profit_multiple),
            revenue_multiple=_to_decimal(revenue_multiple),
            category=category,
            industry=listing.industry or industry_for(category) or "Unknown",
            listing_status=_clean_string(listing.listing_status).lower() or None,
            is_verified=bool(listing.is_verified),
            data_quality_score=float(validation.data_quality_score),
            raw_snapshot=_json_safe(snapshot),
        )

    def validate_batch(
        self, listings: Sequence[RawListing]
    ) -> tuple[list[ListingRecord], list[InvalidListing]]:
        """
        Split a batch into normalized valid records and invalid listings.

        Returns:
            Tuple of (valid records, invalid listings with their validation)
        """
        valid: list[ListingRecord] = []
        invalid: list[InvalidListing] = []

        for listing in listings:
            validation = self.validate(listing)
            if validation.is_valid and listing.listing_id:
                valid.append(self.normalize(listing, validation))
            else:
                invalid.append(InvalidListing(listing=listing, validation=validation))

        logger.info(
            f"Batch validation completed: {len(listings)} total, "
            f"{len(valid)} valid, {len(invalid)} invalid"
        )
        return valid, invalid
