"""
Credit Service

Central service for managing credits in Makos.
Credits are the currency for worksheet generation:
- 1 credit = 1 worksheet
- 2 credits = 1 worksheet that needs diagrams
- x2 for worksheets with more than 15 questions

Key principles:
- Every balance change appends exactly one ledger entry per delta
- Balance writes are compare-and-swap: the update only lands if the row
  still holds the values it was computed from, otherwise we re-read and retry
- A failed ledger write rolls the balance back, so sum(entries) == balance
"""

import logging
from dataclasses import replace
from typing import Optional, Dict, Any, List, Tuple
from datetime import datetime, timezone

from dateutil.parser import isoparse

from app.database import get_supabase_service
from app.models.credits import AccountCredits, LedgerEntry, PlanId, TransactionType
from app.services.payment_reducer import (
    AccountState,
    LedgerDelta,
    PaymentEvent,
    apply_payment_event,
)
from app.services.plans import WELCOME_BONUS_CREDITS
from app.utils.errors import InsufficientCredits, StoreWriteFailed

logger = logging.getLogger(__name__)

ACCOUNTS_TABLE = "user_credits"
TRANSACTIONS_TABLE = "credit_transactions"

# Conditional-update retries before giving up on a contended row
MAX_CAS_ATTEMPTS = 5

# Ledger reads are capped at this many rows per page
MAX_HISTORY_LIMIT = 50

CURSOR_SEPARATOR = "|"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def make_history_cursor(row: Dict[str, Any]) -> str:
    """Keyset cursor pointing just past a ledger row: `<created_at>|<id>`."""
    return f"{row.get('created_at')}{CURSOR_SEPARATOR}{row.get('id')}"


def parse_history_cursor(cursor: str) -> Tuple[str, Optional[str]]:
    """
    Split a history cursor into (created_at, id).

    A bare timestamp is accepted and pages by time only.

    Raises:
        ValueError: the timestamp part is not ISO-8601
    """
    created_at, _, entry_id = cursor.partition(CURSOR_SEPARATOR)
    isoparse(created_at)
    if '"' in entry_id or "," in entry_id:
        raise ValueError(f"Invalid cursor id {entry_id!r}")
    return created_at, entry_id or None


def to_state(account: AccountCredits) -> AccountState:
    return AccountState(
        user_id=account.user_id,
        credits=account.credits,
        plan=account.plan.value if isinstance(account.plan, PlanId) else account.plan,
        plan_started_at=account.plan_started_at,
        polar_subscription_id=account.polar_subscription_id,
    )


class CreditService:
    """
    Central credit management service.

    Usage:
        credit_service = get_credit_service()

        # Debit before generating; raises InsufficientCredits
        entry = await credit_service.spend_credits(user_id, cost, "Worksheet: Fractions (10 questions)")

        # Apply a parsed payment event
        account, entries = await credit_service.apply_event(user_id, SubscriptionRenewed("pro"))
    """

    def __init__(self, supabase=None):
        self.supabase = supabase or get_supabase_service()

    # ==========================================
    # BALANCE STORE
    # ==========================================

    async def get_account(self, user_id: str) -> Optional[AccountCredits]:
        """Read a user's credit row, or None if it does not exist yet."""
        try:
            response = self.supabase.table(ACCOUNTS_TABLE).select("*").eq(
                "user_id", user_id
            ).limit(1).execute()
        except Exception as e:
            logger.error(f"Error fetching credits for user {user_id}: {e}")
            raise StoreWriteFailed("read user_credits", user_id=user_id, cause=e)

        rows = response.data or []
        if not rows:
            return None
        try:
            return AccountCredits.from_row(rows[0])
        except ValueError as e:
            logger.error(f"[CREDITS] Unreadable credit row for user {user_id}: {e}")
            raise StoreWriteFailed("read user_credits", user_id=user_id, cause=e)

    async def get_or_create_account(self, user_id: str) -> AccountCredits:
        """
        Get the credit row, creating it with the welcome bonus on first use.

        Two concurrent first logins race on the primary key; the loser
        re-reads the winner's row and does not write a second bonus.
        """
        account = await self.get_account(user_id)
        if account:
            return account

        now = utc_now()
        try:
            response = self.supabase.table(ACCOUNTS_TABLE).insert({
                "user_id": user_id,
                "credits": WELCOME_BONUS_CREDITS,
                "plan": PlanId.FREE.value,
                "plan_started_at": now.isoformat(),
                "updated_at": now.isoformat(),
            }).execute()
        except Exception as e:
            existing = await self.get_account(user_id)
            if existing:
                logger.info(f"Credit row for user {user_id} created concurrently")
                return existing
            logger.error(f"Error creating credits for user {user_id}: {e}")
            raise StoreWriteFailed("create user_credits", user_id=user_id, cause=e)

        rows = response.data or []
        account = AccountCredits.from_row(rows[0]) if rows else AccountCredits(
            user_id=user_id,
            credits=WELCOME_BONUS_CREDITS,
            plan=PlanId.FREE,
            plan_started_at=now,
        )

        await self._log_transactions(
            user_id,
            [LedgerDelta(
                amount=WELCOME_BONUS_CREDITS,
                type=TransactionType.BONUS,
                description="Welcome bonus - Free tier",
            )],
            balance_after=WELCOME_BONUS_CREDITS,
        )

        logger.info(f"Initialized credits for user {user_id} with {WELCOME_BONUS_CREDITS} bonus credits")
        return account

    async def _compare_and_swap(
        self,
        expected: AccountState,
        new: AccountState,
        now: datetime,
    ) -> bool:
        """
        Write `new` only if the row still matches `expected`.

        Returns False when another writer got there first.
        """
        changes: Dict[str, Any] = {}
        if new.credits != expected.credits:
            changes["credits"] = new.credits
        if new.plan != expected.plan:
            changes["plan"] = new.plan
        if new.plan_started_at != expected.plan_started_at:
            changes["plan_started_at"] = new.plan_started_at.isoformat() if new.plan_started_at else None
        if new.polar_subscription_id != expected.polar_subscription_id:
            changes["polar_subscription_id"] = new.polar_subscription_id

        if not changes:
            return True

        changes["updated_at"] = now.isoformat()

        query = self.supabase.table(ACCOUNTS_TABLE).update(changes).eq(
            "user_id", expected.user_id
        ).eq(
            "credits", expected.credits
        ).eq(
            "plan", expected.plan
        )
        if expected.polar_subscription_id is None:
            query = query.is_("polar_subscription_id", "null")
        else:
            query = query.eq("polar_subscription_id", expected.polar_subscription_id)
        if expected.plan_started_at is None:
            query = query.is_("plan_started_at", "null")
        else:
            query = query.eq("plan_started_at", expected.plan_started_at.isoformat())

        try:
            response = query.execute()
        except Exception as e:
            logger.error(f"Error updating credits for user {expected.user_id}: {e}")
            raise StoreWriteFailed("update user_credits", user_id=expected.user_id, cause=e)

        return bool(response.data)

    async def commit(
        self,
        expected: AccountState,
        new: AccountState,
        deltas: List[LedgerDelta],
        reference_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[List[LedgerEntry]]:
        """
        Persist a state transition and its ledger entries.

        Returns the written entries, or None if the row changed under us
        (caller re-reads and retries).
        """
        now = now or utc_now()

        if not await self._compare_and_swap(expected, new, now):
            return None

        if not deltas:
            return []

        try:
            return await self._log_transactions(
                new.user_id,
                deltas,
                balance_after=new.credits,
                reference_id=reference_id,
            )
        except StoreWriteFailed:
            await self._rollback(expected, new)
            raise

    async def _rollback(self, expected: AccountState, new: AccountState) -> None:
        """Undo a balance write whose ledger entries could not be stored."""
        try:
            restored = await self._compare_and_swap(new, expected, utc_now())
        except StoreWriteFailed:
            restored = False
        if restored:
            logger.warning(f"[CREDITS] Rolled back balance for user {new.user_id} after ledger failure")
        else:
            logger.error(
                f"[CREDITS] Could not roll back balance for user {new.user_id}: "
                f"expected {new.credits} -> {expected.credits}, ledger is out of sync"
            )

    # ==========================================
    # SPEND GUARD
    # ==========================================

    async def spend_credits(
        self,
        user_id: str,
        cost: int,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """
        Debit `cost` credits, or raise InsufficientCredits without touching the row.

        Args:
            user_id: User UUID
            cost: Credits to debit, must be positive
            description: Human readable ledger description
            metadata: Optional context (subject, topic, question_count)

        Returns:
            The usage ledger entry
        """
        if cost <= 0:
            raise ValueError("cost must be positive")

        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            account = await self.get_or_create_account(user_id)
            if account.credits < cost:
                logger.warning(
                    f"Insufficient credits for user {user_id}: need {cost}, have {account.credits}"
                )
                raise InsufficientCredits(required=cost, available=account.credits)

            expected = to_state(account)
            new = replace(expected, credits=expected.credits - cost)
            delta = LedgerDelta(
                amount=-cost,
                type=TransactionType.USAGE,
                description=description,
                metadata=metadata or {},
            )

            entries = await self.commit(expected, new, [delta])
            if entries is not None:
                logger.info(f"Consumed {cost} credits from user {user_id} (balance {new.credits})")
                return entries[0]

            logger.info(f"[CREDITS] Concurrent update for user {user_id}, retrying spend ({attempt})")

        raise StoreWriteFailed("spend credits", user_id=user_id)

    # ==========================================
    # PAYMENT EVENTS
    # ==========================================

    async def apply_event(
        self,
        user_id: str,
        event: PaymentEvent,
        reference_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[AccountCredits, List[LedgerEntry]]:
        """
        Run a payment event through the reducer and persist the result.

        When `reference_id` is given and a ledger entry already carries it,
        the event has been applied before and nothing is written. The check
        is repeated after every lost compare-and-swap.
        """
        now = now or utc_now()

        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            if reference_id and await self.has_reference(user_id, reference_id):
                logger.info(f"[CREDITS] Event {reference_id} already applied for user {user_id}")
                return await self.get_or_create_account(user_id), []

            account = await self.get_or_create_account(user_id)
            expected = to_state(account)
            new, deltas = apply_payment_event(expected, event, now)

            if new == expected and not deltas:
                return account, []

            entries = await self.commit(expected, new, deltas, reference_id=reference_id, now=now)
            if entries is not None:
                updated = account.model_copy(update={
                    "credits": new.credits,
                    "plan": PlanId(new.plan),
                    "plan_started_at": new.plan_started_at,
                    "polar_subscription_id": new.polar_subscription_id,
                    "updated_at": now,
                })
                return updated, entries

            logger.info(f"[CREDITS] Concurrent update for user {user_id}, retrying {type(event).__name__} ({attempt})")

        raise StoreWriteFailed(f"apply {type(event).__name__}", user_id=user_id)

    async def has_reference(self, user_id: str, reference_id: str) -> bool:
        """Whether a ledger entry for this payment event already exists."""
        try:
            response = self.supabase.table(TRANSACTIONS_TABLE).select("id").eq(
                "user_id", user_id
            ).eq(
                "reference_id", reference_id
            ).limit(1).execute()
        except Exception as e:
            raise StoreWriteFailed("read credit_transactions", user_id=user_id, cause=e)
        return bool(response.data)

    # ==========================================
    # LEDGER
    # ==========================================

    async def _log_transactions(
        self,
        user_id: str,
        deltas: List[LedgerDelta],
        balance_after: int,
        reference_id: Optional[str] = None,
    ) -> List[LedgerEntry]:
        """Append ledger entries in one insert."""
        records = []
        for delta in deltas:
            record = {
                "user_id": user_id,
                "amount": delta.amount,
                "type": delta.type.value,
                "description": delta.description,
                "balance_after": balance_after,
            }
            if reference_id:
                record["reference_id"] = reference_id
            if delta.metadata:
                record["metadata"] = delta.metadata
            records.append(record)

        try:
            response = self.supabase.table(TRANSACTIONS_TABLE).insert(records).execute()
        except Exception as e:
            logger.error(f"Error logging credit transaction for user {user_id}: {e}")
            raise StoreWriteFailed("insert credit_transactions", user_id=user_id, cause=e)

        return [LedgerEntry.from_row(row) for row in (response.data or records)]

    async def get_transactions(
        self,
        user_id: str,
        limit: int = MAX_HISTORY_LIMIT,
        cursor: Optional[str] = None,
        transaction_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Page through a user's ledger, newest first.

        Entries are ordered by (created_at, id) so rows written in the same
        transaction, which share a timestamp, still page deterministically.
        `cursor` is the `next_cursor` of the previous page.

        Raises:
            ValueError: malformed cursor
        """
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))

        query = self.supabase.table(TRANSACTIONS_TABLE).select("*").eq("user_id", user_id)
        if transaction_type:
            query = query.eq("type", transaction_type)
        if cursor:
            created_at, entry_id = parse_history_cursor(cursor)
            if entry_id:
                query = query.or_(
                    f'created_at.lt."{created_at}",'
                    f'and(created_at.eq."{created_at}",id.lt."{entry_id}")'
                )
            else:
                query = query.lt("created_at", created_at)

        try:
            response = query.order("created_at", desc=True).order(
                "id", desc=True
            ).limit(limit + 1).execute()
        except Exception as e:
            logger.error(f"Error fetching transactions for user {user_id}: {e}")
            raise StoreWriteFailed("read credit_transactions", user_id=user_id, cause=e)

        rows = response.data or []
        has_more = len(rows) > limit
        rows = rows[:limit]
        transactions = [LedgerEntry.from_row(row) for row in rows]

        next_cursor = None
        if has_more and rows:
            next_cursor = make_history_cursor(rows[-1])

        return {
            "transactions": transactions,
            "next_cursor": next_cursor,
            "has_more": has_more,
            "total_earned": sum(t.amount for t in transactions if t.amount > 0),
            "total_used": sum(-t.amount for t in transactions if t.amount < 0),
        }

    async def get_ledger_sum(self, user_id: str, page_size: int = 1000) -> int:
        """Sum of all ledger amounts for a user."""
        total = 0
        offset = 0
        while True:
            response = self.supabase.table(TRANSACTIONS_TABLE).select("amount").eq(
                "user_id", user_id
            ).order("created_at").order("id").range(offset, offset + page_size - 1).execute()
            rows = response.data or []
            total += sum(int(row.get("amount") or 0) for row in rows)
            if len(rows) < page_size:
                return total
            offset += page_size


# Singleton instance
_credit_service: Optional[CreditService] = None


def get_credit_service() -> CreditService:
    """Get or create credit service instance."""
    global _credit_service
    if _credit_service is None:
        _credit_service = CreditService()
    return _credit_service
