#!/usr/bin/env python3
"""
Cleanup script to reset a shop's data for fresh sync testing.
Deletes the shop's catalog, mystery boxes, instances, sync status and credentials.

Usage:
  python scripts/cleanup_shop_data.py <shop_id>
  python scripts/cleanup_shop_data.py <shop_id> --dry-run

Example:
  python scripts/cleanup_shop_data.py demo-store.myshopify.com
"""

import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

RAW_DB_URL = os.getenv("DATABASE_URL")
if RAW_DB_URL and RAW_DB_URL.startswith("postgresql://") and "+asyncpg" not in RAW_DB_URL:
    os.environ["DATABASE_URL"] = RAW_DB_URL.replace("postgresql://", "postgresql+asyncpg://", 1)

from sqlalchemy import select, func
from database import AsyncSessionLocal, BoxInstance, CatalogItem, MysteryBox, Shop, ShopSyncStatus
from services.storage import storage
from settings import sanitize_shop_id

TABLES = [
    ("box_instances", BoxInstance),
    ("mystery_boxes", MysteryBox),
    ("catalog_items", CatalogItem),
    ("shop_sync_status", ShopSyncStatus),
    ("shops", Shop),
]


async def cleanup_shop(shop_id: str, dry_run: bool = False):
    """Delete all data for a specific shop."""
    normalized = sanitize_shop_id(shop_id)
    if not normalized:
        print("Shop id is empty")
        return

    print(f"\nLooking for data matching shop_id: {normalized}")

    counts = {}
    async with AsyncSessionLocal() as db:
        for table_name, model in TABLES:
            result = await db.execute(
                select(func.count()).select_from(model).where(model.shop_id == normalized)
            )
            counts[table_name] = result.scalar() or 0

    if not any(counts.values()):
        print(f"\nNo data found for shop: {normalized}")
        return

    print("\nFound data to clean:")
    for table_name, count in counts.items():
        if count:
            print(f"   - {count} {table_name}")

    if dry_run:
        print("\nDRY RUN - No changes made")
        return

    print("\nThis will permanently delete all this data!")
    confirm = input("Type 'yes' to confirm: ")
    if confirm.lower() != 'yes':
        print("Aborted")
        return

    deleted = await storage.purge_shop(normalized)
    for table_name, count in deleted.items():
        if count:
            print(f"   Deleted {count} from {table_name}")
    print(f"\nCleanup complete! Shop {normalized} is ready for a fresh sync.")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    shop_id = sys.argv[1]
    dry_run = "--dry-run" in sys.argv

    asyncio.run(cleanup_shop(shop_id, dry_run))
