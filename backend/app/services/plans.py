"""
Plan & Credit Pack Catalog

Static billing configuration:
- Plans: monthly credit allotment and price per tier
- Credit packs: one-time cumulative top-ups (subscribers only)
- Polar product ids for both, overridable via environment

Subscription credits reset to the allotment every billing cycle.
Pack credits are added on top of the current balance.
"""

import os
from typing import Optional, Dict, Any, List

from app.models.credits import PlanId, BillingPeriod

# Credits granted on account creation (ledger cause: bonus)
WELCOME_BONUS_CREDITS = 5

PLANS: Dict[str, Dict[str, Any]] = {
    PlanId.FREE.value: {
        "name": "Free",
        "price": 0,
        "yearly_price": 0,
        "credits": 5,
        "features": [
            "5 credits per month",
            "All question types",
            "PDF & HTML export",
            "Basic support",
        ],
    },
    PlanId.STARTER.value: {
        "name": "Starter",
        "price": 7.99,
        "yearly_price": 76.70,
        "credits": 100,
        "features": [
            "100 credits per month",
            "All question types",
            "PDF & HTML export",
            "Priority support",
            "No watermark",
        ],
    },
    PlanId.PRO.value: {
        "name": "Pro",
        "price": 14.99,
        "yearly_price": 143.90,
        "credits": 200,
        "features": [
            "200 credits per month",
            "All question types",
            "PDF & HTML export",
            "Priority support",
            "No watermark",
        ],
    },
    PlanId.ULTRA.value: {
        "name": "Ultra",
        "price": 29.99,
        "yearly_price": 287.90,
        "credits": 400,
        "features": [
            "400 credits per month",
            "All question types",
            "PDF & HTML export",
            "Priority support",
            "No watermark",
        ],
    },
}

# Polar product ids per paid plan and billing period
SUBSCRIPTION_PRODUCTS: Dict[str, Dict[str, Dict[str, str]]] = {
    BillingPeriod.MONTHLY.value: {
        PlanId.STARTER.value: {
            "env": "POLAR_PRODUCT_STARTER_MONTHLY",
            "default": "244da7c4-b810-494c-b712-bb34d7adff77",
        },
        PlanId.PRO.value: {
            "env": "POLAR_PRODUCT_PRO_MONTHLY",
            "default": "7d235520-3239-4823-91c5-cdf069882a29",
        },
        PlanId.ULTRA.value: {
            "env": "POLAR_PRODUCT_ULTRA_MONTHLY",
            "default": "2a031eef-64db-48cd-ba07-e50680d2c42b",
        },
    },
    BillingPeriod.YEARLY.value: {
        PlanId.STARTER.value: {
            "env": "POLAR_PRODUCT_STARTER_YEARLY",
            "default": "41f1d15e-329d-4adc-8fdc-30b1962d23f7",
        },
        PlanId.PRO.value: {
            "env": "POLAR_PRODUCT_PRO_YEARLY",
            "default": "81b9d8f3-e101-41b8-8014-5f627aea60d6",
        },
        PlanId.ULTRA.value: {
            "env": "POLAR_PRODUCT_ULTRA_YEARLY",
            "default": "0c6bc052-2a24-429c-ac56-6643d0fd3fed",
        },
    },
}

CREDIT_PACK_CONFIG: Dict[str, Dict[str, Any]] = {
    "credits_40": {
        "credits": 40,
        "price": 3.99,
        "product_env": "POLAR_PRODUCT_CREDITS_40",
        "default_product_id": "f4b49fe8-8975-4f19-9f54-a49be6d19b25",
    },
    "credits_70": {
        "credits": 70,
        "price": 6.99,
        "product_env": "POLAR_PRODUCT_CREDITS_70",
        "default_product_id": "5fc143c8-6af1-4bb5-ab18-8350a9919a9c",
    },
    "credits_150": {
        "credits": 150,
        "price": 16.99,
        "product_env": "POLAR_PRODUCT_CREDITS_150",
        "default_product_id": "ac8db116-617c-4686-afd4-8f0667d1ce83",
    },
    "credits_300": {
        "credits": 300,
        "price": 32.99,
        "product_env": "POLAR_PRODUCT_CREDITS_300",
        "default_product_id": "e9c6ee59-2b45-4c27-b32a-422f75134edd",
    },
}


def get_plan_credits(plan: Optional[str]) -> int:
    """Monthly allotment for a plan; unknown plans get the free allotment."""
    plan_data = PLANS.get(plan or "")
    if plan_data is None:
        return PLANS[PlanId.FREE.value]["credits"]
    return plan_data["credits"]


def is_known_plan(plan: Optional[str]) -> bool:
    return bool(plan) and plan in PLANS


def is_paid_plan(plan: Optional[str]) -> bool:
    return is_known_plan(plan) and plan != PlanId.FREE.value


def get_plan_name(plan: str) -> str:
    return PLANS.get(plan, {}).get("name", plan.capitalize())


def get_subscription_product_id(plan: str, billing_period: str = BillingPeriod.MONTHLY.value) -> Optional[str]:
    """Polar product id for a paid plan, or None for free/unknown plans."""
    entry = SUBSCRIPTION_PRODUCTS.get(billing_period, {}).get(plan)
    if not entry:
        return None
    return os.getenv(entry["env"]) or entry["default"]


def get_pack_product_id(pack_id: str) -> Optional[str]:
    pack = CREDIT_PACK_CONFIG.get(pack_id)
    if not pack:
        return None
    return os.getenv(pack["product_env"]) or pack["default_product_id"]


def get_plan_for_product(product_id: Optional[str]) -> Optional[str]:
    """Reverse lookup of a subscription product id (monthly or yearly)."""
    if not product_id:
        return None
    for period, period_products in SUBSCRIPTION_PRODUCTS.items():
        for plan in period_products:
            if get_subscription_product_id(plan, period) == product_id:
                return plan
    return None


def get_pack_credits_for_product(product_id: Optional[str]) -> Optional[int]:
    """Reverse lookup of a credit pack product id."""
    if not product_id:
        return None
    for pack_id, pack in CREDIT_PACK_CONFIG.items():
        if get_pack_product_id(pack_id) == product_id:
            return pack["credits"]
    return None


def list_plans() -> List[Dict[str, Any]]:
    return [{"id": plan_id, **plan} for plan_id, plan in PLANS.items()]


def list_credit_packs() -> List[Dict[str, Any]]:
    return [
        {
            "id": pack_id,
            "credits": pack["credits"],
            "price": pack["price"],
            "product_id": get_pack_product_id(pack_id),
        }
        for pack_id, pack in CREDIT_PACK_CONFIG.items()
    ]
