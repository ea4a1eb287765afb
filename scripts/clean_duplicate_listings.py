#!/usr/bin/env python3
"""
Remove duplicate listing rows left behind by concurrent batches.

Keeps the most recently scraped row for each listing_id. Price history
is keyed by listing_id and is never touched.
"""

import asyncio
import sys

from sqlalchemy import func, select

from marketscan.db.dedup_store import DeduplicationStore
from marketscan.db.models import Listing
from marketscan.db.session import AsyncSessionLocal


async def count_duplicates() -> tuple[int, int]:
    """Return (total rows, rows that would be removed)."""
    async with AsyncSessionLocal() as db:
        total = (await db.execute(select(func.count(Listing.id)))).scalar() or 0
        distinct = (
            await db.execute(select(func.count(func.distinct(Listing.listing_id))))
        ).scalar() or 0
    return total, total - distinct


async def clean_duplicate_listings(interactive: bool = True):
    print("Checking listings for duplicates...")

    total, duplicates = await count_duplicates()
    print(f"Current counts:")
    print(f"  - Listing rows: {total}")
    print(f"  - Duplicate rows: {duplicates}")

    if duplicates == 0:
        print("\nNo duplicates found. Nothing to clean up.")
        return

    if interactive:
        confirm = input(f"\nDelete {duplicates} duplicate listing rows? (yes/no): ")
        if confirm.lower() != "yes":
            print("Cleanup cancelled.")
            return

    store = DeduplicationStore(AsyncSessionLocal)
    removed = await store.clean_duplicates()
    print(f"\n[OK] Removed {removed} duplicate rows")


if __name__ == "__main__":
    asyncio.run(clean_duplicate_listings(interactive="--yes" not in sys.argv))
