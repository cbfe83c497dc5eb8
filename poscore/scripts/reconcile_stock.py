# scripts/reconcile_stock.py
"""
Rebuilds cached stock levels from the ledger.

    python -m poscore.scripts.reconcile_stock --restaurant <id> [--branch <id>] [--dry-run]
"""
import argparse
import asyncio
import logging
from uuid import UUID
from tortoise import Tortoise
from poscore.core.config import LOG_FORMAT, LOG_LEVEL
from poscore.core.db import init_db
from poscore.models.restaurant import Restaurant
from poscore.services.ledger import reconcile_stock_levels


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Replay the stock ledger and correct drifted stock levels.")
    parser.add_argument("--restaurant", type=UUID, help="Restaurant id. All restaurants when omitted.")
    parser.add_argument("--branch", type=UUID, help="Limit to one branch of the restaurant.")
    parser.add_argument("--dry-run", action="store_true", help="Report drift without writing.")
    return parser.parse_args(argv)


async def run(restaurant_id=None, branch_id=None, dry_run=False):
    if restaurant_id:
        restaurant_ids = [restaurant_id]
    else:
        restaurant_ids = await Restaurant.all().values_list("id", flat=True)

    total = 0
    for rid in restaurant_ids:
        drift = await reconcile_stock_levels(rid, branch_id, apply=not dry_run)
        for row in drift:
            print(f"{rid} branch={row['branch_id']} item={row['item_id']} "
                  f"cached={row['cached_on_hand']} ledger={row['ledger_on_hand']} diff={row['difference']}")
        total += len(drift)
    print(f"{total} drifted stock level(s) {'found' if dry_run else 'corrected'}.")
    return total


async def main(argv=None):
    args = parse_args(argv)
    await init_db(generate_schemas=False)
    try:
        await run(args.restaurant, args.branch, args.dry_run)
    finally:
        await Tortoise.close_connections()

if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    asyncio.run(main())
