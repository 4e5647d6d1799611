"""
Polar Service - Payment Processor Integration

Handles communication with the Polar API:
- Webhook signature verification (Standard Webhooks scheme)
- Checkout creation for subscriptions and credit packs
- Subscription cancellation
"""

import os
import hmac
import base64
import hashlib
import logging
import time
from typing import Optional, Dict, Any, List

import httpx

from app.utils.errors import PaymentProviderError

logger = logging.getLogger(__name__)

POLAR_API_BASE = os.getenv("POLAR_API_BASE", "https://api.polar.sh/v1")

# Reject webhook deliveries whose timestamp is further off than this
WEBHOOK_TOLERANCE_SECONDS = 5 * 60


def _decode_secret(secret: str) -> bytes:
    # Standard Webhooks secrets are "whsec_" + base64
    if secret.startswith("whsec_"):
        secret = secret[6:]
    try:
        return base64.b64decode(secret, validate=True)
    except ValueError:
        return secret.encode()


def verify_webhook_signature(
    payload: bytes,
    signature: str,
    msg_id: str,
    timestamp: str,
    secret: Optional[str] = None,
    now: Optional[float] = None,
) -> bool:
    """
    Verify a Polar webhook delivery.

    Signature format:
    - Header: webhook-signature (space separated "v1,base64signature" items)
    - Signed message: "{webhook-id}.{webhook-timestamp}.{body}"
    - Secret: POLAR_WEBHOOK_SECRET, optionally "whsec_" prefixed
    """
    secret = secret if secret is not None else os.getenv("POLAR_WEBHOOK_SECRET", "")
    if not secret:
        logger.error("POLAR_WEBHOOK_SECRET not configured - rejecting webhook")
        return False

    if not signature or not msg_id or not timestamp:
        logger.warning("Webhook is missing signature headers")
        return False

    try:
        sent_at = int(timestamp)
    except ValueError:
        logger.warning(f"Invalid webhook timestamp: {timestamp}")
        return False

    current = now if now is not None else time.time()
    if abs(current - sent_at) > WEBHOOK_TOLERANCE_SECONDS:
        logger.warning(f"Webhook timestamp outside tolerance: {timestamp}")
        return False

    signed_payload = f"{msg_id}.{timestamp}.".encode() + payload
    expected_signature = hmac.new(
        _decode_secret(secret),
        signed_payload,
        hashlib.sha256
    ).digest()

    for sig in signature.split(" "):
        if not sig.startswith("v1,"):
            continue
        try:
            sig_bytes = base64.b64decode(sig[3:])
        except ValueError:
            continue
        if hmac.compare_digest(expected_signature, sig_bytes):
            return True

    logger.warning("Webhook signature verification failed")
    return False


def sign_webhook_payload(payload: bytes, msg_id: str, timestamp: str, secret: str) -> str:
    """Produce a `webhook-signature` header value for a payload."""
    digest = hmac.new(
        _decode_secret(secret),
        f"{msg_id}.{timestamp}.".encode() + payload,
        hashlib.sha256
    ).digest()
    return f"v1,{base64.b64encode(digest).decode()}"


class PolarService:
    """Service for interacting with the Polar API."""

    def __init__(self, access_token: Optional[str] = None, base_url: Optional[str] = None):
        self.access_token = access_token or os.getenv("POLAR_ACCESS_TOKEN", "")
        self.base_url = (base_url or POLAR_API_BASE).rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    def is_configured(self) -> bool:
        return bool(self.access_token)

    async def create_checkout(
        self,
        product_ids: List[str],
        success_url: str,
        metadata: Dict[str, Any],
        customer_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a Polar checkout session.

        Returns:
            Dict with checkout "id" and hosted "url"
        """
        if not self.is_configured():
            raise PaymentProviderError("Polar access token not configured")

        payload: Dict[str, Any] = {
            "products": product_ids,
            "success_url": success_url,
            # Polar metadata values must be strings, ints or bools
            "metadata": {k: v for k, v in metadata.items() if v is not None},
        }
        if customer_email:
            payload["customer_email"] = customer_email

        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(
                    f"{self.base_url}/checkouts/",
                    headers=self.headers,
                    json=payload
                )
        except httpx.HTTPError as e:
            logger.error(f"Polar checkout request failed: {e}")
            raise PaymentProviderError("Could not reach payment provider")

        if response.status_code not in (200, 201):
            logger.error(f"Polar checkout creation failed: {response.status_code} - {response.text}")
            raise PaymentProviderError(
                "Failed to create checkout",
                provider_status=response.status_code,
            )

        data = response.json()
        logger.info(f"Created Polar checkout {data.get('id')} for products {product_ids}")
        return {"id": data.get("id"), "url": data.get("url")}

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """
        Cancel a subscription immediately.

        Polar answers 403 when the subscription is already canceled;
        that is treated as success.
        """
        if not self.is_configured():
            raise PaymentProviderError("Polar access token not configured")

        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.delete(
                    f"{self.base_url}/subscriptions/{subscription_id}",
                    headers=self.headers
                )
        except httpx.HTTPError as e:
            logger.error(f"Polar cancel request failed for {subscription_id}: {e}")
            raise PaymentProviderError("Could not reach payment provider")

        if response.status_code in (200, 204):
            logger.info(f"Cancelled Polar subscription: {subscription_id}")
            return response.json() if response.content else {}

        if response.status_code == 403:
            logger.info(f"Polar subscription {subscription_id} was already canceled")
            return {}

        logger.error(f"Failed to cancel subscription {subscription_id}: {response.status_code} - {response.text}")
        raise PaymentProviderError(
            "Failed to cancel subscription",
            provider_status=response.status_code,
        )


# Singleton instance
_polar_service: Optional[PolarService] = None


def get_polar_service() -> PolarService:
    """Get or create Polar service instance."""
    global _polar_service
    if _polar_service is None:
        _polar_service = PolarService()
    return _polar_service
