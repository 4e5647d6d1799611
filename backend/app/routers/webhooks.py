"""
Webhooks Router - Polar webhook handling

Handles incoming webhook events from Polar for:
- Credit pack purchases
- Subscription activation, renewal and cancellation
"""

import json
import logging
from fastapi import APIRouter, Request, HTTPException, Header

from app.services.polar_service import verify_webhook_signature
from app.services.webhook_reconciler import get_webhook_reconciler
from app.utils.errors import StoreWriteFailed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/polar")
async def polar_webhook(
    request: Request,
    webhook_id: str = Header(None, alias="webhook-id"),
    webhook_timestamp: str = Header(None, alias="webhook-timestamp"),
    webhook_signature: str = Header(None, alias="webhook-signature"),
):
    """
    Handle Polar webhook events

    Events handled:
    - checkout.updated
    - subscription.created
    - order.paid
    - subscription.canceled

    Returns 500 on store failures and 409 while another delivery of the
    same event is in flight, so Polar redelivers the event.
    """
    payload = await request.body()

    if not verify_webhook_signature(payload, webhook_signature, webhook_id, webhook_timestamp):
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = json.loads(payload)
    except ValueError as e:
        logger.error(f"Error parsing webhook payload: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload")

    if not isinstance(event, dict) or not event.get("type"):
        raise HTTPException(status_code=400, detail="Invalid payload")

    event_type = event["type"]
    logger.info(f"[WEBHOOK] Received Polar webhook: {event_type} ({webhook_id})")

    try:
        result = await get_webhook_reconciler().process(webhook_id, event)
    except StoreWriteFailed as e:
        logger.error(
            f"[WEBHOOK] Store failure processing {event_type} ({webhook_id}) "
            f"for user {e.user_id}: {e.message}"
        )
        # Not marked as processed, Polar will retry
        raise HTTPException(status_code=500, detail="Processing error")
    except Exception as e:
        logger.error(f"[WEBHOOK] Error processing webhook {event_type} ({webhook_id}): {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Processing error")

    if result["status"] == "in_progress":
        # Another delivery holds the claim
        raise HTTPException(status_code=409, detail="Event is being processed")

    return result
