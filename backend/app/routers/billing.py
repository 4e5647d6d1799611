"""
Billing Router - API endpoints for plans, checkout and cancellation

Checkouts are hosted by Polar; credits land when the webhook arrives.
"""

import logging
from fastapi import APIRouter, HTTPException, Depends
from typing import List

from app.deps import get_current_user, get_user_id
from app.models.credits import (
    CancelSubscriptionResponse,
    CheckoutResponse,
    CreditPackCheckoutRequest,
    CreditPackResponse,
    PlanId,
    PlanResponse,
    SubscriptionCheckoutRequest,
)
from app.services.credit_service import get_credit_service
from app.services.plans import list_credit_packs, list_plans
from app.services.subscription_service import AccountNotFound, get_subscription_service
from app.utils.errors import handle_exception, raise_forbidden, raise_not_found

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ==========================================
# CATALOG ENDPOINTS
# ==========================================

@router.get("/plans", response_model=List[PlanResponse])
async def get_plans():
    """Available subscription plans with monthly and yearly prices."""
    return [PlanResponse(**plan) for plan in list_plans()]


@router.get("/credit-packs", response_model=List[CreditPackResponse])
async def get_credit_packs():
    """One-time credit packs (available to paid plans only)."""
    return [CreditPackResponse(**pack) for pack in list_credit_packs()]


# ==========================================
# CHECKOUT ENDPOINTS
# ==========================================

@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: SubscriptionCheckoutRequest,
    current_user: dict = Depends(get_current_user)
):
    """
    Create Polar checkout for a subscription

    Returns URL to redirect user to Polar Checkout
    """
    user_id = get_user_id(current_user)
    try:
        subscription_service = get_subscription_service()
        result = await subscription_service.create_subscription_checkout(
            user_id=user_id,
            plan=request.plan.value,
            billing_period=request.billing_period.value,
            user_email=current_user.get("email"),
            success_url=request.success_url,
        )

        return result

    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise handle_exception(e, "create_checkout", user_id=user_id)


@router.post("/credit-packs/checkout", response_model=CheckoutResponse)
async def create_credit_pack_checkout(
    request: CreditPackCheckoutRequest,
    current_user: dict = Depends(get_current_user)
):
    """
    Create Polar checkout for a credit pack purchase

    Note: Credit packs can only be purchased by Starter, Pro or Ultra
    subscribers. Free plan users must upgrade first.
    """
    user_id = get_user_id(current_user)
    try:
        account = await get_credit_service().get_or_create_account(user_id)
        if account.plan == PlanId.FREE:
            raise_forbidden("Credit packs are only available for subscribers. Please upgrade your plan first.")

        subscription_service = get_subscription_service()
        result = await subscription_service.create_credit_pack_checkout(
            user_id=user_id,
            pack_id=request.pack_id,
            user_email=current_user.get("email"),
            success_url=request.success_url,
        )

        return result

    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise handle_exception(e, "create_credit_pack_checkout", user_id=user_id)


# ==========================================
# SUBSCRIPTION MANAGEMENT ENDPOINTS
# ==========================================

@router.post("/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(current_user: dict = Depends(get_current_user)):
    """
    Cancel the subscription and downgrade to the free plan

    Remaining credits are kept.
    """
    user_id = get_user_id(current_user)
    try:
        subscription_service = get_subscription_service()
        account = await subscription_service.cancel_subscription(user_id)

        return CancelSubscriptionResponse(
            success=True,
            message="Subscription canceled successfully. You've been downgraded to the free plan.",
            credits=account.credits,
            plan=account.plan,
        )

    except HTTPException:
        raise
    except AccountNotFound:
        raise_not_found("Credit account", user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise handle_exception(e, "cancel_subscription", user_id=user_id)
