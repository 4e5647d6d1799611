"""
Monthly Free Credits Refresh

Resets free-plan balances to the free allotment once per calendar month.
Paid plans are refreshed by Polar's `order.paid` renewal webhook instead.

Triggered on the 1st of every month by the Inngest cron function and by
the bearer-protected `/cron/monthly-credits` endpoint.
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any

from dateutil.parser import isoparse
from dateutil.relativedelta import relativedelta

from app.database import get_supabase_service
from app.models.credits import PlanId, RefreshCounts, RefreshResult, TransactionType
from app.services.credit_service import (
    ACCOUNTS_TABLE,
    MAX_CAS_ATTEMPTS,
    CreditService,
    get_credit_service,
    to_state,
    utc_now,
)
from app.services.payment_reducer import AccountState, reset_to_allotment
from app.services.plans import get_plan_credits
from app.utils.errors import StoreWriteFailed

logger = logging.getLogger(__name__)

REFRESH_PAGE_SIZE = 500


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return isoparse(value)


def _row_to_state(row: Dict[str, Any]) -> AccountState:
    return AccountState(
        user_id=str(row["user_id"]),
        credits=int(row.get("credits") or 0),
        plan=row.get("plan") or PlanId.FREE.value,
        plan_started_at=_parse_timestamp(row.get("plan_started_at")),
        polar_subscription_id=row.get("polar_subscription_id"),
    )


def refreshed_this_month(plan_started_at: Optional[datetime], now: datetime) -> bool:
    """Whether the free allotment was already granted in `now`'s calendar month."""
    if plan_started_at is None:
        return False
    return plan_started_at.year == now.year and plan_started_at.month == now.month


def next_refresh_at(now: datetime) -> datetime:
    """Midnight UTC on the 1st of the following month."""
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return month_start + relativedelta(months=1)


class MonthlyRefresher:
    """Pages through free-plan accounts and tops them back up."""

    def __init__(
        self,
        supabase=None,
        credit_service: Optional[CreditService] = None,
        page_size: int = REFRESH_PAGE_SIZE,
    ):
        self.supabase = supabase or get_supabase_service()
        self.credit_service = credit_service or get_credit_service()
        self.page_size = page_size

    def _fetch_page(self, after_user_id: Optional[str]) -> list:
        query = self.supabase.table(ACCOUNTS_TABLE).select(
            "user_id, credits, plan, plan_started_at, polar_subscription_id"
        ).eq("plan", PlanId.FREE.value)
        if after_user_id:
            query = query.gt("user_id", after_user_id)

        try:
            response = query.order("user_id").limit(self.page_size).execute()
        except Exception as e:
            logger.error(f"[REFRESH] Error fetching free accounts after {after_user_id}: {e}")
            raise StoreWriteFailed(f"read {ACCOUNTS_TABLE}", cause=e)
        return response.data or []

    async def refresh_account(self, state: AccountState, now: datetime) -> str:
        """
        Refresh one account.

        Returns "updated" or "skipped". A concurrent change re-reads the row,
        so an account that upgraded mid-run is skipped rather than reset.
        """
        allotment = get_plan_credits(PlanId.FREE.value)

        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            if state.plan != PlanId.FREE.value or refreshed_this_month(state.plan_started_at, now):
                return "skipped"

            new, deltas = reset_to_allotment(
                state,
                allotment,
                TransactionType.BONUS,
                f"Monthly free credits - {allotment} credits",
                metadata={"period": now.strftime("%Y-%m")},
                plan_started_at=now,
            )

            entries = await self.credit_service.commit(state, new, deltas, now=now)
            if entries is not None:
                return "updated"

            logger.info(f"[REFRESH] Concurrent update for user {state.user_id}, retrying ({attempt})")
            account = await self.credit_service.get_account(state.user_id)
            if account is None:
                return "skipped"
            state = to_state(account)

        raise StoreWriteFailed("refresh free credits", user_id=state.user_id)

    async def run(self, now: Optional[datetime] = None) -> RefreshResult:
        now = now or utc_now()
        result = RefreshResult(timestamp=now)
        counts: RefreshCounts = result.results[PlanId.FREE.value]

        logger.info(f"[REFRESH] Starting monthly free credits refresh for {now.strftime('%Y-%m')}")

        last_user_id: Optional[str] = None
        while True:
            rows = self._fetch_page(last_user_id)
            if not rows:
                break
            result.pages += 1

            for row in rows:
                user_id = str(row["user_id"])
                try:
                    outcome = await self.refresh_account(_row_to_state(row), now)
                except Exception as e:
                    logger.error(f"[REFRESH] Error refreshing user {user_id}: {e}")
                    counts.errors += 1
                    continue

                if outcome == "updated":
                    counts.updated += 1
                else:
                    counts.skipped += 1

            last_user_id = str(rows[-1]["user_id"])
            if len(rows) < self.page_size:
                break

        logger.info(
            f"[REFRESH] Monthly credits refresh completed: updated={counts.updated} "
            f"skipped={counts.skipped} errors={counts.errors} pages={result.pages}; "
            f"next run {next_refresh_at(now).isoformat()}"
        )
        return result


async def refresh_monthly_credits(now: Optional[datetime] = None) -> RefreshResult:
    """Run one refresh pass with the default store."""
    return await MonthlyRefresher().run(now)

