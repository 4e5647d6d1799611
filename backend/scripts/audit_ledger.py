"""
Audit Script: compare credit balances with their ledgers

Every balance change appends ledger entries, so for each account
sum(credit_transactions.amount) must equal user_credits.credits.
This script reports every account where that does not hold.

Usage:
    # Audit every account
    python scripts/audit_ledger.py

    # Audit a single user
    python scripts/audit_ledger.py --user 6f1c...

Requirements:
    - SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set
    - Run from backend directory: cd backend && python scripts/audit_ledger.py
"""
import os
import sys
import json
import asyncio
import argparse
import logging

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

from app.database import get_supabase_service
from app.services.credit_service import ACCOUNTS_TABLE, CreditService
from app.utils.errors import StoreWriteFailed

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

PAGE_SIZE = 500


def iter_user_ids(supabase):
    """Yield every user_id in user_credits, paged by user_id."""
    last_user_id = None
    while True:
        query = supabase.table(ACCOUNTS_TABLE).select("user_id")
        if last_user_id:
            query = query.gt("user_id", last_user_id)
        rows = query.order("user_id").limit(PAGE_SIZE).execute().data or []
        for row in rows:
            yield row["user_id"]
        if len(rows) < PAGE_SIZE:
            return
        last_user_id = rows[-1]["user_id"]


async def audit(credit_service: CreditService, user_ids) -> dict:
    stats = {"checked": 0, "mismatched": 0, "missing": 0, "unreadable": 0, "mismatches": []}

    for user_id in user_ids:
        try:
            account = await credit_service.get_account(user_id)
        except StoreWriteFailed as e:
            logger.error(f"User {user_id}: credit row could not be read: {e.details.get('cause')}")
            stats["unreadable"] += 1
            continue
        if account is None:
            logger.warning(f"No credit account for user {user_id}")
            stats["missing"] += 1
            continue

        ledger_sum = await credit_service.get_ledger_sum(user_id)
        stats["checked"] += 1

        if ledger_sum != account.credits:
            stats["mismatched"] += 1
            stats["mismatches"].append({
                "user_id": user_id,
                "balance": account.credits,
                "ledger_sum": ledger_sum,
                "difference": account.credits - ledger_sum,
            })
            logger.warning(
                f"User {user_id}: balance {account.credits} != ledger sum {ledger_sum}"
            )

    return stats


def main():
    parser = argparse.ArgumentParser(
        description="Check that every credit balance equals the sum of its ledger"
    )
    parser.add_argument(
        "--user",
        help="Only audit this user id"
    )
    args = parser.parse_args()

    load_dotenv()
    supabase = get_supabase_service()
    credit_service = CreditService(supabase=supabase)

    user_ids = [args.user] if args.user else iter_user_ids(supabase)
    stats = asyncio.run(audit(credit_service, user_ids))

    logger.info("=" * 50)
    logger.info("LEDGER AUDIT SUMMARY")
    logger.info("=" * 50)
    logger.info(f"Results: {json.dumps(stats, indent=2)}")

    if stats["mismatched"] > 0 or stats["unreadable"] > 0:
        logger.warning("Some balances do not match their ledger. Check logs above.")
        sys.exit(1)

    logger.info("Ledger audit complete!")


if __name__ == "__main__":
    main()
