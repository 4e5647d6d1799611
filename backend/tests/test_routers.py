import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app import database
from app.main import app
from app.services import credit_service as credit_module
from app.services import subscription_service as subscription_module
from app.services import webhook_reconciler as reconciler_module
from app.services.credit_service import CreditService, utc_now
from app.services.polar_service import sign_webhook_payload
from app.services.subscription_service import SubscriptionService
from app.services.webhook_reconciler import WebhookReconciler
from app.utils.errors import PaymentProviderError

WEBHOOK_SECRET = "whsec_bWFrb3Mtcm91dGVyLXRlc3Q="
AUTH = {"Authorization": "Bearer token-u1"}


@pytest.fixture
def polar_mock():
    polar = MagicMock()
    polar.create_checkout = AsyncMock(return_value={"id": "chk_1", "url": "https://polar.sh/checkout/chk_1"})
    polar.cancel_subscription = AsyncMock(return_value={})
    return polar


@pytest_asyncio.fixture
async def client(fake_supabase, polar_mock, monkeypatch):
    monkeypatch.setenv("POLAR_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("CRON_SECRET", "cron-secret")

    fake_supabase.auth.add_user("u1", "u1@example.com", token="token-u1")
    service = CreditService(supabase=fake_supabase)

    database.set_supabase_service(fake_supabase)
    monkeypatch.setattr(credit_module, "_credit_service", service)
    monkeypatch.setattr(
        reconciler_module,
        "_webhook_reconciler",
        WebhookReconciler(supabase=fake_supabase, credit_service=service),
    )
    monkeypatch.setattr(
        subscription_module,
        "_subscription_service",
        SubscriptionService(credit_service=service, polar_service=polar_mock),
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client

    database.set_supabase_service(None)


def signed_headers(body: bytes, msg_id: str = "msg_1"):
    timestamp = str(int(time.time()))
    return {
        "webhook-id": msg_id,
        "webhook-timestamp": timestamp,
        "webhook-signature": sign_webhook_payload(body, msg_id, timestamp, WEBHOOK_SECRET),
        "content-type": "application/json",
    }


# =============================================================================
# Credits
# =============================================================================

@pytest.mark.asyncio
async def test_balance_requires_auth(client):
    assert (await client.get("/credits/balance")).status_code == 401
    assert (await client.get("/credits/balance", headers={"Authorization": "Bearer nope"})).status_code == 401


@pytest.mark.asyncio
async def test_balance_creates_account_lazily(client, fake_supabase):
    response = await client.get("/credits/balance", headers=AUTH)

    assert response.status_code == 200
    data = response.json()
    assert data["credits"] == 5
    assert data["plan"] == "free"
    assert data["plan_credits"] == 5
    assert data["has_subscription"] is False


@pytest.mark.asyncio
async def test_cost_endpoint(client):
    response = await client.get(
        "/credits/cost", params={"subject": "Geometry", "topic": "Triangles", "question_count": 20}
    )
    assert response.status_code == 200
    assert response.json()["cost"] == 4


@pytest.mark.asyncio
async def test_spend_returns_402_with_shortfall(client, fake_supabase):
    fake_supabase.seed_account("u1", 1)

    response = await client.post(
        "/credits/spend",
        json={"subject": "Geometry", "topic": "Triangles", "question_count": 10},
        headers=AUTH,
    )

    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["error"] == "INSUFFICIENT_CREDITS"
    assert detail["details"]["shortfall"] == 1
    assert fake_supabase.account("u1")["credits"] == 1


@pytest.mark.asyncio
async def test_spend_debits_server_side_cost(client, fake_supabase):
    fake_supabase.seed_account("u1", 10)

    response = await client.post(
        "/credits/spend",
        json={"subject": "Physics", "topic": "Forces", "question_count": 20},
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.json()["cost"] == 4
    assert response.json()["balance"] == 6


@pytest.mark.asyncio
async def test_history_endpoint(client, fake_supabase):
    fake_supabase.seed_account("u1", 10)
    await client.post("/credits/spend", json={"subject": "Art", "topic": "Color"}, headers=AUTH)

    response = await client.get("/credits/history", params={"limit": 1}, headers=AUTH)

    data = response.json()
    assert response.status_code == 200
    assert len(data["transactions"]) == 1
    assert data["transactions"][0]["type"] == "usage"
    assert data["has_more"] is True
    assert data["next_cursor"]


@pytest.mark.asyncio
async def test_history_follows_cursor_and_rejects_garbage(client, fake_supabase):
    fake_supabase.seed_account("u1", 10)
    await client.post("/credits/spend", json={"subject": "Art", "topic": "Color"}, headers=AUTH)

    first = (await client.get("/credits/history", params={"limit": 1}, headers=AUTH)).json()
    second = await client.get(
        "/credits/history", params={"limit": 1, "cursor": first["next_cursor"]}, headers=AUTH
    )
    bad = await client.get("/credits/history", params={"cursor": "yesterday-ish"}, headers=AUTH)

    assert second.json()["transactions"][0]["description"] == "Opening balance"
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_history_rejects_limit_above_fifty(client):
    response = await client.get("/credits/history", params={"limit": 51}, headers=AUTH)
    assert response.status_code == 422


# =============================================================================
# Billing
# =============================================================================

@pytest.mark.asyncio
async def test_plans_and_packs_catalog(client):
    plans = (await client.get("/billing/plans")).json()
    packs = (await client.get("/billing/credit-packs")).json()

    assert {p["id"]: p["credits"] for p in plans} == {"free": 5, "starter": 100, "pro": 200, "ultra": 400}
    assert [p["credits"] for p in packs] == [40, 70, 150, 300]


@pytest.mark.asyncio
async def test_subscription_checkout(client, polar_mock):
    response = await client.post(
        "/billing/checkout", json={"plan": "pro", "billing_period": "yearly"}, headers=AUTH
    )

    assert response.status_code == 200
    assert response.json()["checkout_url"] == "https://polar.sh/checkout/chk_1"
    metadata = polar_mock.create_checkout.call_args.kwargs["metadata"]
    assert metadata == {"user_id": "u1", "product_type": "subscription", "plan": "pro", "billing_period": "yearly"}


@pytest.mark.asyncio
async def test_checkout_for_free_plan_is_rejected(client):
    response = await client.post("/billing/checkout", json={"plan": "free"}, headers=AUTH)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_credit_packs_require_paid_plan(client, fake_supabase, polar_mock):
    fake_supabase.seed_account("u1", 5)

    response = await client.post("/billing/credit-packs/checkout", json={"pack_id": "credits_70"}, headers=AUTH)

    assert response.status_code == 403
    polar_mock.create_checkout.assert_not_called()


@pytest.mark.asyncio
async def test_credit_pack_checkout_for_subscriber(client, fake_supabase, polar_mock):
    fake_supabase.seed_account("u1", 5, plan="starter")

    response = await client.post("/billing/credit-packs/checkout", json={"pack_id": "credits_70"}, headers=AUTH)

    assert response.status_code == 200
    metadata = polar_mock.create_checkout.call_args.kwargs["metadata"]
    assert metadata["product_type"] == "credits"
    assert metadata["credits"] == 70


@pytest.mark.asyncio
async def test_cancel_status_codes(client, fake_supabase):
    assert (await client.post("/billing/cancel", headers=AUTH)).status_code == 404

    fake_supabase.seed_account("u1", 5)
    assert (await client.post("/billing/cancel", headers=AUTH)).status_code == 400


@pytest.mark.asyncio
async def test_cancel_downgrades_and_keeps_credits(client, fake_supabase, polar_mock):
    fake_supabase.seed_account("u1", 47, plan="ultra", polar_subscription_id="sub_1")

    response = await client.post("/billing/cancel", headers=AUTH)

    assert response.status_code == 200
    assert response.json()["plan"] == "free"
    assert response.json()["credits"] == 47
    polar_mock.cancel_subscription.assert_awaited_once_with("sub_1")
    assert fake_supabase.ledger("u1")[-1]["description"] == "Subscription canceled by user"


@pytest.mark.asyncio
async def test_cancel_provider_failure_keeps_plan(client, fake_supabase, polar_mock):
    fake_supabase.seed_account("u1", 47, plan="ultra", polar_subscription_id="sub_1")
    polar_mock.cancel_subscription.side_effect = PaymentProviderError("Failed to cancel subscription", 500)

    response = await client.post("/billing/cancel", headers=AUTH)

    assert response.status_code == 502
    assert fake_supabase.account("u1")["plan"] == "ultra"


# =============================================================================
# Webhooks
# =============================================================================

@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature(client):
    body = json.dumps({"type": "order.paid", "data": {}}).encode()
    headers = signed_headers(body)
    headers["webhook-signature"] = "v1,AAAA"

    response = await client.post("/webhooks/polar", content=body, headers=headers)

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_credits_pack_and_is_idempotent(client, fake_supabase):
    fake_supabase.seed_account("u1", 12, plan="pro")
    body = json.dumps({
        "type": "checkout.updated",
        "data": {
            "id": "chk_1",
            "status": "succeeded",
            "metadata": {"user_id": "u1", "product_type": "credits", "credits": "70"},
        },
    }).encode()

    first = await client.post("/webhooks/polar", content=body, headers=signed_headers(body, "evt_1"))
    second = await client.post("/webhooks/polar", content=body, headers=signed_headers(body, "evt_1"))

    assert first.status_code == 200
    assert first.json()["status"] == "processed"
    assert second.json()["status"] == "already_processed"
    assert fake_supabase.account("u1")["credits"] == 82


@pytest.mark.asyncio
async def test_webhook_in_flight_duplicate_gets_409(client, fake_supabase):
    fake_supabase.seed_account("u1", 12, plan="pro")
    fake_supabase.tables["polar_webhook_events"] = [
        {"id": "evt_4", "claimed_at": utc_now().isoformat(), "processed_at": None},
    ]
    body = json.dumps({
        "type": "checkout.updated",
        "data": {"status": "succeeded", "metadata": {"user_id": "u1", "product_type": "credits", "credits": "70"}},
    }).encode()

    response = await client.post("/webhooks/polar", content=body, headers=signed_headers(body, "evt_4"))

    assert response.status_code == 409
    assert fake_supabase.account("u1")["credits"] == 12


@pytest.mark.asyncio
async def test_webhook_store_failure_returns_500(client, fake_supabase):
    fake_supabase.seed_account("u1", 12, plan="pro")
    fake_supabase.fail_on("user_credits", "update")
    body = json.dumps({
        "type": "order.paid",
        "data": {"id": "ord_1", "metadata": {"user_id": "u1", "product_type": "subscription", "plan": "pro"}},
    }).encode()

    response = await client.post("/webhooks/polar", content=body, headers=signed_headers(body, "evt_2"))

    assert response.status_code == 500
    assert fake_supabase.rows("polar_webhook_events") == []


@pytest.mark.asyncio
async def test_webhook_unknown_user_is_acknowledged(client):
    body = json.dumps({
        "type": "checkout.updated",
        "data": {"status": "succeeded", "customer_email": "ghost@example.com",
                 "metadata": {"product_type": "credits", "credits": "40"}},
    }).encode()

    response = await client.post("/webhooks/polar", content=body, headers=signed_headers(body, "evt_3"))

    assert response.status_code == 200
    assert response.json()["status"] == "user_not_resolved"


# =============================================================================
# Cron
# =============================================================================

@pytest.mark.asyncio
async def test_cron_requires_bearer_secret(client):
    assert (await client.post("/cron/monthly-credits")).status_code == 401
    assert (await client.get("/cron/monthly-credits", headers={"Authorization": "Bearer wrong"})).status_code == 401


@pytest.mark.asyncio
async def test_cron_refuses_everything_without_configured_secret(client, monkeypatch):
    monkeypatch.delenv("CRON_SECRET")
    response = await client.post("/cron/monthly-credits", headers={"Authorization": "Bearer "})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_cron_runs_refresh(client, fake_supabase):
    fake_supabase.seed_account("free-1", 0, plan_started_at="2020-01-01T00:00:00+00:00")

    response = await client.get("/cron/monthly-credits", headers={"Authorization": "Bearer cron-secret"})

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["results"]["free"]["updated"] == 1
    assert fake_supabase.account("free-1")["credits"] == 5


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
