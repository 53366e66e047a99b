#!/usr/bin/env python3
"""
Maintenance commands for the co-purchase index.

Usage:
  python scripts/copurchase_admin.py init-db
  python scripts/copurchase_admin.py refresh
  python scripts/copurchase_admin.py rebuild
  python scripts/copurchase_admin.py status
  python scripts/copurchase_admin.py uninstall
  python scripts/copurchase_admin.py recommend 12 40 --shop 1 --limit 5 [--groups 3,4] [--enrich]
"""

import argparse
import asyncio
import json
import logging
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load .env file if it exists
from dotenv import load_dotenv
load_dotenv()

from database import drop_copurchase_tables, engine, init_db  # noqa: E402
from services.errors import CoPurchaseError  # noqa: E402
from services.recommendation_service import recommendation_service  # noqa: E402

logger = logging.getLogger("copurchase_admin")


async def cmd_init_db(args) -> int:
    await init_db()
    print("Tables ensured.")
    return 0


async def cmd_refresh(args) -> int:
    outcome = await recommendation_service.refresh()
    print(json.dumps(outcome.to_dict(), indent=2))
    return 0 if outcome.ran else 2


async def cmd_rebuild(args) -> int:
    outcome = await recommendation_service.trigger_full_rebuild()
    print(json.dumps(outcome.to_dict(), indent=2))
    return 0 if outcome.ran else 2


async def cmd_uninstall(args) -> int:
    removed = await recommendation_service.clear_settings()
    await drop_copurchase_tables()
    print(f"Removed {removed} settings and dropped the co-purchase tables.")
    return 0


async def cmd_status(args) -> int:
    print(json.dumps(await recommendation_service.status(), indent=2))
    return 0


async def cmd_recommend(args) -> int:
    groups = [g for g in (args.groups or "").split(",") if g.strip()]
    if args.enrich:
        products = await recommendation_service.recommend_products(args.product_ids, args.shop, groups, args.limit)
        rows = [product.to_dict() for product in products]
    else:
        scored = await recommendation_service.recommend(args.product_ids, args.shop, groups, args.limit)
        rows = [{"product_id": s.product_id, "score": s.score} for s in scored]

    if not rows:
        print("No recommendations.")
        return 0
    print(json.dumps(rows, indent=2, default=str))
    return 0


COMMANDS = {
    "init-db": cmd_init_db,
    "refresh": cmd_refresh,
    "rebuild": cmd_rebuild,
    "status": cmd_status,
    "uninstall": cmd_uninstall,
    "recommend": cmd_recommend,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Co-purchase index maintenance")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create missing tables")
    sub.add_parser("refresh", help="Fold unprocessed orders into the pair table")
    sub.add_parser("rebuild", help="Clear the index and re-fold every valid order")
    sub.add_parser("status", help="Show last refresh time and index size")
    sub.add_parser("uninstall", help="Remove the block settings and drop the index tables")

    recommend = sub.add_parser("recommend", help="Query recommendations for product ids")
    recommend.add_argument("product_ids", nargs="+", type=int)
    recommend.add_argument("--shop", type=int, default=None)
    recommend.add_argument("--limit", type=int, default=None)
    recommend.add_argument("--groups", default=None, help="Comma-separated customer group ids")
    recommend.add_argument("--enrich", action="store_true", help="Include product display data")
    return parser


async def run(args) -> int:
    try:
        return await COMMANDS[args.command](args)
    except CoPurchaseError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        if e.details:
            print(json.dumps(e.details, indent=2, default=str), file=sys.stderr)
        return 1
    finally:
        await engine.dispose()


def main() -> int:
    args = build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
