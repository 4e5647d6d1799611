"""
Subscription Service - Polar checkouts and cancellation

Creates hosted Polar checkouts for plans and credit packs, and runs the
user-initiated cancellation flow. Balance changes never happen here
directly: checkouts are credited when Polar's webhook arrives, and a
cancellation goes through the same payment reducer as the webhook path.
"""

import os
import logging
from typing import Optional, Dict, Any

from app.models.credits import AccountCredits, BillingPeriod, PlanId, ProductType
from app.services.credit_service import CreditService, get_credit_service
from app.services.payment_reducer import SubscriptionCanceled
from app.services.plans import (
    CREDIT_PACK_CONFIG,
    get_pack_product_id,
    get_subscription_product_id,
    is_paid_plan,
)
from app.services.polar_service import PolarService, get_polar_service

logger = logging.getLogger(__name__)

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")


class AccountNotFound(LookupError):
    """No credit row exists for the user."""


class SubscriptionService:
    """Checkout creation and cancellation on top of Polar."""

    def __init__(
        self,
        credit_service: Optional[CreditService] = None,
        polar_service: Optional[PolarService] = None,
    ):
        self.credit_service = credit_service or get_credit_service()
        self.polar = polar_service or get_polar_service()

    def _success_url(self, success_url: Optional[str]) -> str:
        return success_url or f"{FRONTEND_URL}/checkout/success?checkout_id={{CHECKOUT_ID}}"

    async def create_subscription_checkout(
        self,
        user_id: str,
        plan: str,
        billing_period: str = BillingPeriod.MONTHLY.value,
        user_email: Optional[str] = None,
        success_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a Polar checkout for a paid plan.

        Returns:
            {"checkout_url": str, "checkout_id": str}
        """
        if not is_paid_plan(plan):
            raise ValueError(f"Invalid plan: {plan}. Choose starter, pro or ultra.")

        product_id = get_subscription_product_id(plan, billing_period)
        if not product_id:
            raise ValueError(f"No product configured for {plan} ({billing_period})")

        checkout = await self.polar.create_checkout(
            product_ids=[product_id],
            success_url=self._success_url(success_url),
            customer_email=user_email,
            metadata={
                "user_id": user_id,
                "product_type": ProductType.SUBSCRIPTION.value,
                "plan": plan,
                "billing_period": billing_period,
            },
        )

        logger.info(f"Created subscription checkout {checkout['id']} for user {user_id}, plan: {plan} ({billing_period})")
        return {"checkout_url": checkout["url"], "checkout_id": checkout["id"]}

    async def create_credit_pack_checkout(
        self,
        user_id: str,
        pack_id: str,
        user_email: Optional[str] = None,
        success_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a Polar checkout for a one-time credit pack.

        Callers must check that the user is on a paid plan first.
        """
        if pack_id not in CREDIT_PACK_CONFIG:
            raise ValueError(f"Invalid pack: {pack_id}. Available: {list(CREDIT_PACK_CONFIG.keys())}")

        credits = CREDIT_PACK_CONFIG[pack_id]["credits"]
        checkout = await self.polar.create_checkout(
            product_ids=[get_pack_product_id(pack_id)],
            success_url=self._success_url(success_url),
            customer_email=user_email,
            metadata={
                "user_id": user_id,
                "product_type": ProductType.CREDITS.value,
                "pack_id": pack_id,
                "credits": credits,
            },
        )

        logger.info(f"Created credit pack checkout {checkout['id']} for user {user_id}, pack: {pack_id}")
        return {"checkout_url": checkout["url"], "checkout_id": checkout["id"]}

    async def cancel_subscription(self, user_id: str) -> AccountCredits:
        """
        Cancel the user's Polar subscription and downgrade to free.

        The remaining balance is kept. Polar later sends
        `subscription.canceled`, which is a no-op by then.

        Raises:
            AccountNotFound: no credit row for the user
            ValueError: no subscription to cancel, or already on free
            PaymentProviderError: Polar refused the cancellation
        """
        account = await self.credit_service.get_account(user_id)
        if not account:
            raise AccountNotFound("User not found")

        subscription_id = account.polar_subscription_id
        if not subscription_id:
            raise ValueError("No active subscription found")

        if account.plan == PlanId.FREE:
            raise ValueError("You are already on the free plan")

        await self.polar.cancel_subscription(subscription_id)

        updated, _ = await self.credit_service.apply_event(
            user_id,
            SubscriptionCanceled(subscription_id=subscription_id, by_user=True),
            reference_id=f"cancel:{subscription_id}",
        )

        logger.info(f"User {user_id} canceled subscription {subscription_id}, kept {updated.credits} credits")
        return updated


# Singleton instance
_subscription_service: Optional[SubscriptionService] = None


def get_subscription_service() -> SubscriptionService:
    """Get or create subscription service instance."""
    global _subscription_service
    if _subscription_service is None:
        _subscription_service = SubscriptionService()
    return _subscription_service
