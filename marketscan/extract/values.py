"""Parsing of extracted text into typed values, and expected value ranges."""

import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

_MONEY = re.compile(r"\$\s*(\d[\d,]*(?:\.\d+)?)\s*([kKmMbB])?(?![a-zA-Z])")
_MULTIPLE = re.compile(r"(\d+(?:\.\d+)?)\s*x\b", re.IGNORECASE)
_INTEGER = re.compile(r"\d[\d,]*")
_LISTING_ID_IN_URL = re.compile(r"/(\d+)(?:-|/|\?|$)")
_SUFFIX = {"k": 1_000, "m": 1_000_000, "b": 1_000_000_000}


def parse_money(text: Optional[str]) -> Optional[float]:
    """
    Parse the first dollar amount in a string.

    "$1,250" -> 1250.0, "$45k" -> 45000.0, "$1.2M" -> 1200000.0
    """
    if not text:
        return None
    m = _MONEY.search(text)
    if not m:
        return None
    value = float(m.group(1).replace(",", ""))
    if m.group(2):
        value *= _SUFFIX[m.group(2).lower()]
    return value


def parse_multiple(text: Optional[str]) -> Optional[float]:
    """Parse a valuation multiple such as "3.4x"."""
    if not text:
        return None
    m = _MULTIPLE.search(text)
    return float(m.group(1)) if m else None


def parse_int(text: Optional[str]) -> Optional[int]:
    """Parse the first integer in a string, ignoring thousands separators."""
    if not text:
        return None
    m = _INTEGER.search(text)
    return int(m.group(0).replace(",", "")) if m else None


def parse_age_months(text: Optional[str]) -> Optional[int]:
    """Parse a site age like "2 years" or "8 months" into months."""
    if not text:
        return None
    value = parse_int(text)
    if value is None:
        return None
    lowered = text.lower()
    if "year" in lowered or re.search(r"\d\s*y\b", lowered):
        return value * 12
    return value


def listing_id_from_url(url: Optional[str]) -> Optional[str]:
    """Extract the numeric listing id from a listing URL path."""
    if not url:
        return None
    m = _LISTING_ID_IN_URL.search(url)
    return m.group(1) if m else None


@dataclass(frozen=True)
class ExpectedData:
    """What a correctly extracted value of one data type looks like."""

    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None


EXPECTED_DATA: dict[str, ExpectedData] = {
    "price": ExpectedData(min=100, max=100_000_000),
    "revenue": ExpectedData(min=0, max=10_000_000),
    "profit": ExpectedData(min=0, max=10_000_000),
    "multiple": ExpectedData(min=0.1, max=100),
    "views": ExpectedData(min=0, max=100_000_000),
    "bids": ExpectedData(min=0, max=100_000),
    "title": ExpectedData(pattern=r"^[A-Z0-9].{9,}"),
    "category": ExpectedData(pattern=r"\w"),
    "listing_status": ExpectedData(pattern=r"\w"),
}

# How each data type's text is turned into a value
VALUE_PARSERS: dict[str, Callable[[str], Any]] = {
    "price": parse_money,
    "revenue": parse_money,
    "profit": parse_money,
    "multiple": parse_multiple,
    "views": parse_int,
    "bids": parse_int,
    "category_count": parse_int,
    "site_age": parse_age_months,
}


def parse_value(data_type: str, text: Optional[str]) -> Any:
    """Parse text for a data type; text-valued types return the trimmed text or None."""
    parser = VALUE_PARSERS.get(data_type)
    if parser is not None:
        return parser(text)
    return text.strip() if text and text.strip() else None
