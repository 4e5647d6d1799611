"""
Credit Ledger - Pydantic Models

Models for the credit balance store, ledger entries, and the
request/response bodies of the credits and billing API.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


# =============================================================================
# ENUMS
# =============================================================================

class PlanId(str, Enum):
    """Subscription tiers."""
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ULTRA = "ultra"


class TransactionType(str, Enum):
    """Cause tag of a ledger entry."""
    PURCHASE = "purchase"
    USAGE = "usage"
    BONUS = "bonus"
    SUBSCRIPTION = "subscription"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class ProductType(str, Enum):
    """Value of `product_type` in checkout metadata."""
    SUBSCRIPTION = "subscription"
    CREDITS = "credits"


# =============================================================================
# STORE ROWS
# =============================================================================

class AccountCredits(BaseModel):
    """One row of `user_credits`."""
    user_id: str
    credits: int = 0
    plan: PlanId = PlanId.FREE
    plan_started_at: Optional[datetime] = None
    polar_subscription_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AccountCredits":
        plan = row.get("plan") or PlanId.FREE.value
        if plan not in PlanId._value2member_map_:
            # The write guard filters on the stored value; it must round-trip
            raise ValueError(f"Unknown plan '{plan}' for user {row.get('user_id')}")
        return cls(
            user_id=str(row["user_id"]),
            credits=int(row.get("credits") or 0),
            plan=plan,
            plan_started_at=row.get("plan_started_at"),
            polar_subscription_id=row.get("polar_subscription_id"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


class LedgerEntry(BaseModel):
    """One row of `credit_transactions`."""
    id: Optional[str] = None
    user_id: str
    amount: int
    type: TransactionType
    description: str = ""
    balance_after: Optional[int] = None
    reference_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LedgerEntry":
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            user_id=str(row["user_id"]),
            amount=int(row.get("amount") or 0),
            type=row.get("type", TransactionType.USAGE.value),
            description=row.get("description") or "",
            balance_after=row.get("balance_after"),
            reference_id=row.get("reference_id"),
            metadata=row.get("metadata"),
            created_at=row.get("created_at"),
        )


# =============================================================================
# CREDITS API
# =============================================================================

class CreditBalanceResponse(BaseModel):
    """Current credit balance."""
    credits: int = Field(description="Credits available")
    plan: PlanId = Field(description="Current plan")
    plan_credits: int = Field(description="Monthly allotment of the current plan")
    plan_started_at: Optional[datetime] = None
    has_subscription: bool = False

    class Config:
        json_schema_extra = {
            "example": {
                "credits": 47,
                "plan": "pro",
                "plan_credits": 200,
                "plan_started_at": "2025-01-01T00:00:00Z",
                "has_subscription": True,
            }
        }


class CreditCostResponse(BaseModel):
    """Credits a worksheet generation would cost."""
    cost: int
    subject: str
    topic: str
    question_count: int


class SpendRequest(BaseModel):
    """Debit credits for one worksheet generation."""
    subject: str = ""
    topic: str = ""
    question_count: int = Field(10, ge=1, le=100)
    description: Optional[str] = Field(None, max_length=200)


class SpendResponse(BaseModel):
    success: bool
    cost: int
    balance: int
    transaction_id: Optional[str] = None


class CreditHistoryResponse(BaseModel):
    """Credit transaction history, newest first."""
    transactions: List[LedgerEntry]
    next_cursor: Optional[str] = None
    has_more: bool = False
    total_earned: int = 0
    total_used: int = 0


# =============================================================================
# BILLING API
# =============================================================================

class PlanResponse(BaseModel):
    id: PlanId
    name: str
    credits: int
    price: float
    yearly_price: float
    features: List[str] = []


class CreditPackResponse(BaseModel):
    id: str
    credits: int
    price: float
    product_id: Optional[str] = None


class SubscriptionCheckoutRequest(BaseModel):
    plan: PlanId
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    success_url: Optional[str] = None


class CreditPackCheckoutRequest(BaseModel):
    pack_id: str = "credits_40"
    success_url: Optional[str] = None


class CheckoutResponse(BaseModel):
    checkout_url: str
    checkout_id: Optional[str] = None


class CancelSubscriptionResponse(BaseModel):
    success: bool
    message: str
    credits: int
    plan: PlanId


# =============================================================================
# MONTHLY REFRESH
# =============================================================================

class RefreshCounts(BaseModel):
    updated: int = 0
    skipped: int = 0
    errors: int = 0


class RefreshResult(BaseModel):
    """Outcome of one monthly refresh run."""
    success: bool = True
    message: str = "Monthly credits refresh completed"
    results: Dict[str, RefreshCounts] = Field(
        default_factory=lambda: {plan.value: RefreshCounts() for plan in PlanId}
    )
    pages: int = 0
    timestamp: datetime
