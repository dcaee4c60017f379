import hashlib
import hmac
import json
import time

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import get_db
from main import app
from services.session_token import create_anonymous_session, create_session_token


USER_ID = "api-user"
AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(USER_ID, 'api@example.com')['token']}"}
OTHER_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token('api-other')['token']}"}
ANON_HEADER = {"X-Session-Id": create_anonymous_session()["session_id"]}
WEBHOOK_SECRET = "payment-webhook-secret-123"
ADMIN_KEY = "admin-key-for-tests-only"


@pytest.fixture(autouse=True)
def configured_secrets(monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_endpoint_secret")


@pytest.mark.asyncio
async def test_liveness_and_price_tiers(api_client):
    live = await api_client.get("/health/live")
    tiers = await api_client.get("/billing/price-tiers")

    assert live.json() == {"alive": True}
    assert tiers.status_code == 200
    assert tiers.json()["tiers"] == [
        {"amount_cents": 499, "credits": 10},
        {"amount_cents": 999, "credits": 25},
        {"amount_cents": 2499, "credits": 75},
    ]


@pytest.mark.asyncio
async def test_anonymous_session_endpoint_issues_usable_id(api_client):
    response = await api_client.post("/generation/session")
    session_id = response.json()["session_id"]

    status = await api_client.get("/generation/rate-limit", headers={"X-Session-Id": session_id})

    assert status.status_code == 200
    assert status.json()["identifier_type"] == "anonymous_session"


@pytest.mark.asyncio
async def test_rate_limit_status_uses_forwarded_ip_without_session(api_client):
    response = await api_client.get("/generation/rate-limit", headers={"X-Forwarded-For": "203.0.113.50, 10.0.0.1"})

    payload = response.json()
    assert response.status_code == 200
    assert payload["identifier_type"] == "ip"
    assert payload["rate_limit"]["tier"] == "anonymous"
    assert payload["rate_limit"]["hourly_remaining"] == 3
    assert payload["balance"] is None


@pytest.mark.asyncio
async def test_malformed_identity_is_rejected(api_client):
    bad_session = await api_client.get("/generation/rate-limit", headers={"X-Session-Id": "no spaces allowed"})
    bad_token = await api_client.get("/generation/rate-limit", headers={"Authorization": "Bearer not-a-token"})

    assert bad_session.status_code == 422
    assert bad_session.json()["detail"]["code"] == "validation_error"
    assert bad_token.status_code == 401


@pytest.mark.asyncio
async def test_unsigned_session_id_is_rejected(api_client):
    response = await api_client.post(
        "/generation/requests",
        json={"styles": ["classic"]},
        headers={"X-Session-Id": "anon_made_up_by_client"},
    )

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "validation_error"


@pytest.mark.asyncio
async def test_rotating_sessions_from_one_ip_share_the_anonymous_quota(api_client):
    statuses = []
    for _ in range(6):
        issued = await api_client.post("/generation/session")
        response = await api_client.post(
            "/generation/requests",
            json={"styles": ["classic"]},
            headers={"X-Session-Id": issued.json()["session_id"], "X-Forwarded-For": "198.51.100.7"},
        )
        statuses.append(response.status_code)

    assert statuses == [201, 201, 201, 429, 429, 429]
    assert response.json()["detail"]["daily_remaining"] == 0


@pytest.mark.asyncio
async def test_client_supplied_tier_is_ignored(api_client):
    statuses = []
    for _ in range(4):
        response = await api_client.post(
            "/generation/requests",
            json={"styles": ["classic"], "tier": "premium"},
            headers=ANON_HEADER,
        )
        statuses.append(response.status_code)

    assert statuses == [201, 201, 201, 429]
    detail = response.json()["detail"]
    assert detail["code"] == "rate_limit_exceeded"
    assert detail["daily_remaining"] == 0
    assert "reset_at" in detail


@pytest.mark.asyncio
async def test_request_lifecycle_over_http_refunds_on_failure(api_client):
    created = await api_client.post("/generation/requests", json={"styles": ["boho"]}, headers=AUTH_HEADER)
    assert created.status_code == 201
    request_id = created.json()["request"]["id"]
    assert created.json()["balance"]["free_remaining"] == 2

    processing = await api_client.post(f"/generation/requests/{request_id}/processing", headers=AUTH_HEADER)
    failed = await api_client.post(
        f"/generation/requests/{request_id}/fail",
        json={"processing_time_ms": 4000, "error_message": "provider timeout"},
        headers=AUTH_HEADER,
    )
    again = await api_client.post(f"/generation/requests/{request_id}/complete", json={}, headers=AUTH_HEADER)
    fetched = await api_client.get(f"/generation/requests/{request_id}", headers=AUTH_HEADER)

    assert processing.json()["request"]["status"] == "processing"
    assert failed.status_code == 200
    assert failed.json()["refunded"] is True
    assert failed.json()["balance"]["free_remaining"] == 3
    assert again.status_code == 409
    assert fetched.json()["request"]["status"] == "failed"


@pytest.mark.asyncio
async def test_requests_are_private_to_their_owner(api_client):
    created = await api_client.post("/generation/requests", json={"styles": ["boho"]}, headers=AUTH_HEADER)
    request_id = created.json()["request"]["id"]

    response = await api_client.post(f"/generation/requests/{request_id}/fail", json={}, headers=OTHER_AUTH_HEADER)

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_portrait_endpoint_generates_and_debits(api_client, image_generator):
    response = await api_client.post(
        "/generation/portraits",
        json={"image_data": "aGVsbG8=", "prompt": "Veil in the wind", "styles": ["editorial"]},
        headers=AUTH_HEADER,
    )
    credits = await api_client.get("/billing/credits", headers=AUTH_HEADER)

    assert response.status_code == 200
    assert response.json()["image"]["image_url"].startswith("https://images.test/")
    assert credits.json()["balance"]["free_remaining"] == 2
    assert image_generator.calls[0]["style"] == "editorial"


@pytest.mark.asyncio
async def test_out_of_credits_returns_402(api_client):
    for _ in range(3):
        ok = await api_client.post("/generation/requests", json={"styles": ["classic"]}, headers=AUTH_HEADER)
        assert ok.status_code == 201

    response = await api_client.post("/generation/requests", json={"styles": ["classic"]}, headers=AUTH_HEADER)

    assert response.status_code == 402
    assert response.json()["detail"]["code"] == "insufficient_credits"


@pytest.mark.asyncio
async def test_credits_require_a_session(api_client):
    response = await api_client.get("/billing/credits")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_payment_event_endpoint_is_idempotent(api_client):
    body = {"external_payment_id": "pi_http_1", "amount_cents": 999, "customer_reference": USER_ID}
    headers = {"X-Webhook-Secret": WEBHOOK_SECRET}

    first = await api_client.post("/billing/payment-events", json=body, headers=headers)
    second = await api_client.post("/billing/payment-events", json=body, headers=headers)
    rate = await api_client.get("/generation/rate-limit", headers=AUTH_HEADER)

    assert first.json()["status"] == "processed"
    assert first.json()["credits_granted"] == 25
    assert second.json()["status"] == "already_processed"
    assert second.json()["balance"]["paid"] == 25
    assert rate.json()["rate_limit"]["tier"] == "premium"


@pytest.mark.asyncio
async def test_payment_event_endpoint_rejects_bad_secret_and_unknown_amount(api_client):
    body = {"external_payment_id": "pi_http_2", "amount_cents": 1500, "customer_reference": USER_ID}

    unauthorized = await api_client.post("/billing/payment-events", json=body, headers={"X-Webhook-Secret": "nope"})
    unknown = await api_client.post("/billing/payment-events", json=body, headers={"X-Webhook-Secret": WEBHOOK_SECRET})

    assert unauthorized.status_code == 401
    assert unknown.status_code == 422
    assert unknown.json()["detail"]["code"] == "unknown_price_tier"


@pytest.mark.asyncio
async def test_payment_events_disabled_without_secret(api_client, monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "")
    body = {"external_payment_id": "pi_http_3", "amount_cents": 999, "customer_reference": USER_ID}

    response = await api_client.post("/billing/payment-events", json=body, headers={"X-Webhook-Secret": "anything"})

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_stripe_webhook_credits_checkout(api_client):
    payload = json.dumps(
        {
            "id": "evt_http",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_http",
                    "amount_total": 499,
                    "payment_intent": "pi_stripe_http",
                    "metadata": {"user_id": USER_ID},
                }
            },
        }
    )
    timestamp = int(time.time())
    digest = hmac.new(
        b"whsec_endpoint_secret", f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()

    response = await api_client.post(
        "/billing/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": f"t={timestamp},v1={digest}", "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "processed"
    assert response.json()["credits_granted"] == 10


@pytest.mark.asyncio
async def test_bonus_grant_requires_admin_key_and_is_idempotent(api_client):
    body = {"user_id": USER_ID, "credits": 5, "reference": "promo-spring", "reason": "Spring promo"}

    denied = await api_client.post("/billing/bonus", json=body)
    first = await api_client.post("/billing/bonus", json=body, headers={"X-Admin-Key": ADMIN_KEY})
    second = await api_client.post("/billing/bonus", json=body, headers={"X-Admin-Key": ADMIN_KEY})

    assert denied.status_code == 401
    assert first.json()["status"] == "processed"
    assert second.json()["status"] == "already_processed"
    assert second.json()["balance"]["bonus"] == 5


@pytest_asyncio.fixture
async def unreachable_store_client(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nowhere.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()


@pytest.mark.asyncio
async def test_unreachable_store_fails_closed(unreachable_store_client):
    status = await unreachable_store_client.get("/generation/rate-limit", headers=ANON_HEADER)
    start = await unreachable_store_client.post(
        "/generation/requests", json={"styles": ["classic"]}, headers=AUTH_HEADER
    )

    assert status.status_code == 503
    assert status.json()["detail"]["code"] == "storage_unavailable"
    assert start.status_code == 503
