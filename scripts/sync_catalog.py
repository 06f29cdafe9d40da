#!/usr/bin/env python3
"""
Run one catalog sync for a connected shop outside the API (cron / manual backfill).

Usage:
  python scripts/sync_catalog.py <shop_id>
  python scripts/sync_catalog.py <shop_id> --max-pages 5
"""

import argparse
import asyncio
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

from database import init_db
from services.catalog_sync import CatalogSyncEngine
from services.errors import MysteryBoxError
from services.mystery_box_service import MysteryBoxService
from services.storage import storage
from settings import SYNC_MAX_PAGES


async def main(shop_id: str, max_pages: int) -> int:
    await init_db()
    service = MysteryBoxService(
        storage=storage,
        sync_engine=CatalogSyncEngine(storage, max_pages=max_pages),
    )
    try:
        report = await service.sync_catalog(shop_id)
    except MysteryBoxError as exc:
        print(json.dumps(exc.to_dict(), indent=2))
        return 1
    print(json.dumps(report.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("shop_id")
    parser.add_argument("--max-pages", type=int, default=SYNC_MAX_PAGES)
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.shop_id, args.max_pages)))
