"""
Payment Event Reducer

Single definition of what each payment event does to an account:

    apply_payment_event(AccountState, PaymentEvent, now) -> (AccountState, [LedgerDelta])

No I/O happens here. The webhook reconciler and the cancellation flow
parse/resolve their inputs into one of the event types below, run the
reducer, then persist the new state and the emitted deltas together.

Policy:
- Credit packs are cumulative (added to the balance)
- Subscription activation and renewal reset the balance to the plan
  allotment; unused credits are forfeited. The ledger records the signed
  difference so that sum(entries) == balance.
- Cancellation downgrades to free and keeps the balance; a cancel for a
  subscription other than the one on the account is a no-op
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple, Union

from app.models.credits import PlanId, TransactionType
from app.services.plans import get_plan_credits, get_plan_name, is_paid_plan


@dataclass(frozen=True)
class AccountState:
    """Ledger-relevant part of a `user_credits` row."""
    user_id: str
    credits: int = 0
    plan: str = PlanId.FREE.value
    plan_started_at: Optional[datetime] = None
    polar_subscription_id: Optional[str] = None


@dataclass(frozen=True)
class LedgerDelta:
    """A ledger entry to append, before it gets an id and a timestamp."""
    amount: int
    type: TransactionType
    description: str
    metadata: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# EVENTS
# =============================================================================

@dataclass(frozen=True)
class CreditsPurchased:
    credits: int


@dataclass(frozen=True)
class SubscriptionActivated:
    plan: str


@dataclass(frozen=True)
class SubscriptionLinked:
    subscription_id: str


@dataclass(frozen=True)
class SubscriptionRenewed:
    plan: str


@dataclass(frozen=True)
class SubscriptionCanceled:
    subscription_id: Optional[str] = None
    by_user: bool = False


@dataclass(frozen=True)
class Ignored:
    reason: str


PaymentEvent = Union[
    CreditsPurchased,
    SubscriptionActivated,
    SubscriptionLinked,
    SubscriptionRenewed,
    SubscriptionCanceled,
    Ignored,
]


# =============================================================================
# REDUCER
# =============================================================================

def reset_to_allotment(
    state: AccountState,
    allotment: int,
    transaction_type: TransactionType,
    description: str,
    metadata: Optional[Dict[str, Any]] = None,
    **changes: Any,
) -> Tuple[AccountState, List[LedgerDelta]]:
    """Overwrite the balance with `allotment` and record the signed difference."""
    delta = allotment - state.credits
    new_state = replace(state, credits=allotment, **changes)
    entry = LedgerDelta(
        amount=delta,
        type=transaction_type,
        description=description,
        metadata={"allotment": allotment, "previous_balance": state.credits, **(metadata or {})},
    )
    return new_state, [entry]


def apply_payment_event(
    state: AccountState,
    event: PaymentEvent,
    now: datetime,
) -> Tuple[AccountState, List[LedgerDelta]]:
    if isinstance(event, CreditsPurchased):
        if event.credits <= 0:
            return state, []
        new_state = replace(state, credits=state.credits + event.credits)
        return new_state, [
            LedgerDelta(
                amount=event.credits,
                type=TransactionType.PURCHASE,
                description=f"Purchased {event.credits} extra credits",
                metadata={"pack_credits": event.credits},
            )
        ]

    if isinstance(event, SubscriptionActivated):
        if not is_paid_plan(event.plan):
            return state, []
        allotment = get_plan_credits(event.plan)
        return reset_to_allotment(
            state,
            allotment,
            TransactionType.SUBSCRIPTION,
            f"{get_plan_name(event.plan)} plan - {allotment} monthly credits",
            metadata={"plan": event.plan},
            plan=event.plan,
            plan_started_at=now,
        )

    if isinstance(event, SubscriptionRenewed):
        if not is_paid_plan(event.plan):
            return state, []
        allotment = get_plan_credits(event.plan)
        return reset_to_allotment(
            state,
            allotment,
            TransactionType.SUBSCRIPTION,
            f"Monthly renewal - {get_plan_name(event.plan)} plan ({allotment} credits)",
            metadata={"plan": event.plan},
            plan=event.plan,
        )

    if isinstance(event, SubscriptionLinked):
        return replace(state, polar_subscription_id=event.subscription_id), []

    if isinstance(event, SubscriptionCanceled):
        if state.plan == PlanId.FREE.value and not state.polar_subscription_id:
            return state, []
        if (
            event.subscription_id
            and state.polar_subscription_id
            and event.subscription_id != state.polar_subscription_id
        ):
            # Late cancel of a replaced subscription
            return state, []
        new_state = replace(
            state,
            plan=PlanId.FREE.value,
            polar_subscription_id=None,
            plan_started_at=now,
        )
        description = (
            "Subscription canceled by user"
            if event.by_user
            else "Subscription canceled - downgraded to Free plan"
        )
        return new_state, [
            LedgerDelta(
                amount=0,
                type=TransactionType.SUBSCRIPTION,
                description=description,
                metadata={"previous_plan": state.plan},
            )
        ]

    # Ignored
    return state, []
