"""
Webhook Reconciler - Polar payment events

Turns verified Polar webhook payloads into balance changes:

    payload -> parse_payment_event -> PaymentEvent
            -> resolve user -> CreditService.apply_event

Events handled:
- checkout.updated (status succeeded): credit pack purchase or subscription activation
- subscription.created: link the Polar subscription to the account
- order.paid: subscription renewal
- subscription.canceled: downgrade to free
- checkout.created, subscription.updated, anything else: logged no-op

Every delivery is deduplicated twice: by claiming its row in
`polar_webhook_events` before applying it, and by the `reference_id`
stored on the ledger entries it produced.
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any

from dateutil.parser import isoparse

from app.database import get_supabase_service
from app.models.credits import ProductType
from app.services.credit_service import CreditService, get_credit_service, utc_now
from app.services.payment_reducer import (
    CreditsPurchased,
    Ignored,
    PaymentEvent,
    SubscriptionActivated,
    SubscriptionCanceled,
    SubscriptionLinked,
    SubscriptionRenewed,
)
from app.services.plans import (
    get_pack_credits_for_product,
    get_plan_for_product,
    is_paid_plan,
)
from app.utils.errors import StoreWriteFailed, UserNotResolved, is_unique_violation

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS_TABLE = "polar_webhook_events"

# Page size when scanning auth users by email
AUTH_USERS_PAGE_SIZE = 1000

# An unfinished claim older than this belongs to a dead delivery
CLAIM_LEASE_SECONDS = 300

CLAIM_ACQUIRED = "acquired"
CLAIM_PROCESSED = "processed"
CLAIM_IN_PROGRESS = "in_progress"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return isoparse(value)


def _metadata(data: Dict[str, Any]) -> Dict[str, Any]:
    return data.get("metadata") or {}


def _product_id(data: Dict[str, Any]) -> Optional[str]:
    product_id = data.get("product_id")
    if product_id:
        return product_id
    product = data.get("product") or {}
    if product.get("id"):
        return product["id"]
    products = data.get("products") or []
    if products:
        first = products[0]
        return first.get("id") if isinstance(first, dict) else first
    return None


def _customer_email(data: Dict[str, Any]) -> Optional[str]:
    email = data.get("customer_email")
    if email:
        return email
    customer = data.get("customer") or {}
    return customer.get("email")


def _parse_credits(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _parse_checkout(data: Dict[str, Any]) -> PaymentEvent:
    if data.get("status") != "succeeded":
        return Ignored(f"checkout status {data.get('status')}")

    metadata = _metadata(data)
    product_id = _product_id(data)
    product_type = metadata.get("product_type")

    if not product_type:
        if get_pack_credits_for_product(product_id):
            product_type = ProductType.CREDITS.value
        elif get_plan_for_product(product_id):
            product_type = ProductType.SUBSCRIPTION.value

    if product_type == ProductType.CREDITS.value:
        credits = _parse_credits(metadata.get("credits")) or get_pack_credits_for_product(product_id) or 0
        if credits <= 0:
            return Ignored(f"unknown credit pack product {product_id}")
        return CreditsPurchased(credits=credits)

    if product_type == ProductType.SUBSCRIPTION.value:
        plan = metadata.get("plan") or get_plan_for_product(product_id)
        if not is_paid_plan(plan):
            return Ignored(f"unknown subscription plan {plan} for product {product_id}")
        return SubscriptionActivated(plan=plan)

    return Ignored(f"checkout without product type for product {product_id}")


def _parse_order(data: Dict[str, Any]) -> PaymentEvent:
    metadata = _metadata(data)
    product_id = _product_id(data)

    if metadata.get("product_type"):
        if metadata["product_type"] != ProductType.SUBSCRIPTION.value:
            return Ignored("one-time order")
        plan = metadata.get("plan") or get_plan_for_product(product_id)
    elif data.get("billing_reason") == "subscription_cycle":
        plan = get_plan_for_product(product_id)
    else:
        return Ignored(f"order billing reason {data.get('billing_reason')}")

    if not is_paid_plan(plan):
        return Ignored(f"order for unknown plan product {product_id}")
    return SubscriptionRenewed(plan=plan)


def parse_payment_event(event_type: str, data: Dict[str, Any]) -> PaymentEvent:
    """Map a Polar event type and its `data` object to a PaymentEvent."""
    if event_type == "checkout.updated":
        return _parse_checkout(data)

    if event_type == "subscription.created":
        if not data.get("id"):
            return Ignored("subscription without id")
        return SubscriptionLinked(subscription_id=data["id"])

    if event_type == "order.paid":
        return _parse_order(data)

    if event_type == "subscription.canceled":
        return SubscriptionCanceled(subscription_id=data.get("id"))

    return Ignored(f"unhandled event type {event_type}")


class WebhookReconciler:
    """Applies Polar webhook deliveries to the credit ledger."""

    def __init__(self, supabase=None, credit_service: Optional[CreditService] = None):
        self.supabase = supabase or get_supabase_service()
        self.credit_service = credit_service or get_credit_service()

    async def process(self, event_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process one verified delivery.

        The event row is claimed before anything is applied, so two
        deliveries of the same event cannot both reach the ledger. The claim
        is released when processing fails or no user is found, which lets a
        redelivery start over.

        Returns:
            {"status": "processed" | "already_processed" | "in_progress"
                       | "ignored" | "user_not_resolved", ...}

        Raises:
            StoreWriteFailed: the delivery must be retried
        """
        event_type = payload.get("type", "")
        data = payload.get("data") or {}

        claim = await self.claim(event_id, event_type, payload)
        if claim == CLAIM_PROCESSED:
            logger.info(f"[WEBHOOK] Event {event_id} already processed, skipping")
            return {"status": "already_processed", "event_id": event_id}
        if claim == CLAIM_IN_PROGRESS:
            logger.info(f"[WEBHOOK] Event {event_id} is being processed by another delivery")
            return {"status": "in_progress", "event_id": event_id}

        try:
            result = await self._reconcile(event_id, event_type, data)
        except Exception:
            await self.release(event_id)
            raise

        if result["status"] == "user_not_resolved":
            await self.release(event_id)
        else:
            await self.mark_processed(event_id)
        return result

    async def _reconcile(self, event_id: str, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        event = parse_payment_event(event_type, data)

        if isinstance(event, Ignored):
            logger.info(f"[WEBHOOK] Ignoring {event_type} ({event_id}): {event.reason}")
            return {"status": "ignored", "event_id": event_id, "reason": event.reason}

        try:
            user_id = await self.resolve_user(event_type, data, event_id)
        except UserNotResolved as e:
            logger.warning(
                f"[WEBHOOK] No user for {event_type} ({event_id}), email={e.details.get('email')}"
            )
            return {"status": "user_not_resolved", "event_id": event_id}

        account, entries = await self.credit_service.apply_event(
            user_id, event, reference_id=event_id
        )

        logger.info(
            f"[WEBHOOK] Applied {type(event).__name__} from {event_type} ({event_id}) "
            f"for user {user_id}: plan={account.plan.value} credits={account.credits}"
        )
        return {
            "status": "processed",
            "event_id": event_id,
            "user_id": user_id,
            "credits": account.credits,
            "plan": account.plan.value,
            "entries": len(entries),
        }

    # ==========================================
    # USER RESOLUTION
    # ==========================================

    async def resolve_user(self, event_type: str, data: Dict[str, Any], event_id: Optional[str] = None) -> str:
        """
        Find the account a payment event belongs to.

        Order: metadata.user_id, then the linked subscription id, then the
        billing email looked up in Supabase auth.
        """
        user_id = _metadata(data).get("user_id")
        if user_id:
            return str(user_id)

        subscription_id = data.get("subscription_id")
        if not subscription_id and event_type.startswith("subscription."):
            subscription_id = data.get("id")
        if subscription_id:
            user_id = await self._find_user_by_subscription(subscription_id)
            if user_id:
                return user_id

        email = _customer_email(data)
        if email:
            user_id = await self._find_user_by_email(email)
            if user_id:
                return user_id

        raise UserNotResolved(event_id=event_id, email=email)

    async def _find_user_by_subscription(self, subscription_id: str) -> Optional[str]:
        try:
            response = self.supabase.table("user_credits").select("user_id").eq(
                "polar_subscription_id", subscription_id
            ).limit(1).execute()
        except Exception as e:
            raise StoreWriteFailed("read user_credits", cause=e)

        rows = response.data or []
        return str(rows[0]["user_id"]) if rows else None

    async def _find_user_by_email(self, email: str) -> Optional[str]:
        target = email.strip().lower()
        page = 1
        while True:
            try:
                users = self.supabase.auth.admin.list_users(page=page, per_page=AUTH_USERS_PAGE_SIZE)
            except Exception as e:
                raise StoreWriteFailed("list auth users", cause=e)

            for user in users or []:
                if (getattr(user, "email", None) or "").lower() == target:
                    logger.info(f"[WEBHOOK] Resolved billing email after scanning {page} auth user page(s)")
                    return str(user.id)

            if not users or len(users) < AUTH_USERS_PAGE_SIZE:
                logger.info(f"[WEBHOOK] Billing email not found after scanning {page} auth user page(s)")
                return None
            page += 1

    # ==========================================
    # IDEMPOTENCY
    # ==========================================

    async def claim(
        self,
        event_id: str,
        event_type: str,
        payload: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> str:
        """
        Take ownership of an event before applying it.

        Inserting the row is the claim; the primary key makes it exclusive.
        A claim left unfinished for longer than CLAIM_LEASE_SECONDS (the
        process died mid-delivery) can be taken over.

        Returns:
            CLAIM_ACQUIRED, CLAIM_PROCESSED or CLAIM_IN_PROGRESS
        """
        now = now or utc_now()
        try:
            self.supabase.table(WEBHOOK_EVENTS_TABLE).insert({
                "id": event_id,
                "event_type": event_type,
                "payload": payload,
                "claimed_at": now.isoformat(),
                "processed_at": None,
            }).execute()
            return CLAIM_ACQUIRED
        except Exception as e:
            if not is_unique_violation(e):
                raise StoreWriteFailed(f"insert {WEBHOOK_EVENTS_TABLE}", cause=e)

        row = await self._get_event_row(event_id)
        if row is None:
            # Released between our insert and read; let the sender retry
            return CLAIM_IN_PROGRESS
        if row.get("processed_at"):
            return CLAIM_PROCESSED

        claimed_at = _parse_timestamp(row.get("claimed_at"))
        if claimed_at and (now - claimed_at).total_seconds() < CLAIM_LEASE_SECONDS:
            return CLAIM_IN_PROGRESS

        query = self.supabase.table(WEBHOOK_EVENTS_TABLE).update({
            "claimed_at": now.isoformat(),
        }).eq("id", event_id).is_("processed_at", "null")
        if row.get("claimed_at"):
            query = query.eq("claimed_at", row["claimed_at"])
        else:
            query = query.is_("claimed_at", "null")

        try:
            response = query.execute()
        except Exception as e:
            raise StoreWriteFailed(f"update {WEBHOOK_EVENTS_TABLE}", cause=e)

        if response.data:
            logger.warning(f"[WEBHOOK] Took over expired claim on event {event_id} (claimed {row.get('claimed_at')})")
            return CLAIM_ACQUIRED
        return CLAIM_IN_PROGRESS

    async def _get_event_row(self, event_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.supabase.table(WEBHOOK_EVENTS_TABLE).select(
                "id, claimed_at, processed_at"
            ).eq("id", event_id).limit(1).execute()
        except Exception as e:
            raise StoreWriteFailed(f"read {WEBHOOK_EVENTS_TABLE}", cause=e)
        rows = response.data or []
        return rows[0] if rows else None

    async def mark_processed(self, event_id: str) -> None:
        try:
            self.supabase.table(WEBHOOK_EVENTS_TABLE).update({
                "processed_at": utc_now().isoformat(),
            }).eq("id", event_id).execute()
        except Exception as e:
            raise StoreWriteFailed(f"update {WEBHOOK_EVENTS_TABLE}", cause=e)

    async def release(self, event_id: str) -> None:
        """Drop an unfinished claim so a redelivery is processed from scratch."""
        try:
            self.supabase.table(WEBHOOK_EVENTS_TABLE).delete().eq(
                "id", event_id
            ).is_("processed_at", "null").execute()
        except Exception as e:
            logger.error(f"[WEBHOOK] Could not release claim on event {event_id}: {e}")
            raise StoreWriteFailed(f"delete {WEBHOOK_EVENTS_TABLE}", cause=e)


# Singleton instance
_webhook_reconciler: Optional[WebhookReconciler] = None


def get_webhook_reconciler() -> WebhookReconciler:
    """Get or create webhook reconciler instance."""
    global _webhook_reconciler
    if _webhook_reconciler is None:
        _webhook_reconciler = WebhookReconciler()
    return _webhook_reconciler
