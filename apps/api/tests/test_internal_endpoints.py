from __future__ import annotations

from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from giftflow_api.core.settings import settings
from giftflow_api.models import CampaignBudgetMode, CreditAccount


@pytest.fixture
def internal_headers():
    previous = settings.internal_api_key
    settings.internal_api_key = "internal-key"
    try:
        yield {"X-API-Key": "internal-key"}
    finally:
        settings.internal_api_key = previous


@pytest.mark.asyncio
async def test_evaluate_conditions_endpoint(app_with_db, build_world, sms_backend, internal_headers) -> None:
    app, _ = app_with_db
    world = await build_world()
    body = {
        "recipientId": str(world.recipient_id),
        "campaignId": str(world.campaign_id),
        "eventType": "call_completed",
        "metadata": {"source": "call"},
    }

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        rejected = await client.post("/api/v1/conditions/evaluate", json=body)
        first = await client.post("/api/v1/conditions/evaluate", json=body, headers=internal_headers)
        repeat = await client.post("/api/v1/conditions/evaluate", json=body, headers=internal_headers)

    assert rejected.status_code == 401
    assert first.status_code == 200
    payload = first.json()
    assert payload["outcome"] == "triggered"
    assert payload["triggered"] is True
    assert payload["conditionNumber"] == 1
    assert payload["deliveryStatus"] == "sent"
    assert payload["redemptionId"]
    assert repeat.json()["outcome"] == "already_triggered"
    assert len(sms_backend.sent_messages) == 1


@pytest.mark.asyncio
async def test_provision_endpoint_reports_outcomes(app_with_db, build_world, internal_headers) -> None:
    app, _ = app_with_db
    world = await build_world(balance="30")
    request = {
        "campaignId": str(world.campaign_id),
        "brandId": str(world.brand_id),
        "denomination": 25,
        "recipientId": str(world.recipient_id),
        "conditionNumber": 1,
    }

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        provisioned = await client.post("/api/v1/gift-cards/provision", json=request, headers=internal_headers)
        replayed = await client.post("/api/v1/gift-cards/provision", json=request, headers=internal_headers)
        overdraft = await client.post(
            "/api/v1/gift-cards/provision",
            json={**request, "conditionNumber": 2},
            headers=internal_headers,
        )
        invalid = await client.post(
            "/api/v1/gift-cards/provision",
            json={**request, "denomination": 0},
            headers=internal_headers,
        )

    assert provisioned.status_code == 200
    body = provisioned.json()
    assert body["success"] is True
    assert body["alreadyProvisioned"] is False
    assert body["source"] == "inventory"
    assert body["creditRemaining"] == 5.0
    assert body["card"]["cardCode"].startswith("CARD-")

    assert replayed.json()["alreadyProvisioned"] is True
    assert replayed.json()["card"]["id"] == body["card"]["id"]

    assert overdraft.status_code == 200
    assert overdraft.json()["success"] is False
    assert overdraft.json()["errorCode"] == "GC-006"
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_credit_check_and_allocate(app_with_db, build_world, internal_headers) -> None:
    app, session_factory = app_with_db
    world = await build_world(balance="40", budget_mode=CampaignBudgetMode.ISOLATED)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        short = await client.get(
            f"/api/v1/credit/campaigns/{world.campaign_id}/check",
            params={"amount": "50"},
            headers=internal_headers,
        )
        allocated = await client.post(
            f"/api/v1/credit/accounts/{world.account_id}/allocate",
            json={"amount": "25", "note": "April top-up"},
            headers=internal_headers,
        )
        enough = await client.get(
            f"/api/v1/credit/campaigns/{world.campaign_id}/check",
            params={"amount": "50"},
            headers=internal_headers,
        )
        negative = await client.post(
            f"/api/v1/credit/accounts/{world.account_id}/allocate",
            json={"amount": "-5"},
            headers=internal_headers,
        )

    assert short.status_code == 200
    assert short.json() == {
        "sufficient": False,
        "accountId": str(world.account_id),
        "accountType": "campaign",
        "available": 40.0,
        "requested": 50.0,
    }
    assert allocated.status_code == 200
    assert allocated.json()["balanceBefore"] == 40.0
    assert allocated.json()["balanceAfter"] == 65.0
    assert allocated.json()["transactionId"]
    assert enough.json()["sufficient"] is True
    assert negative.status_code == 422

    async with session_factory() as session:
        account = await session.get(CreditAccount, world.account_id)

    assert account.total_remaining == Decimal("65")
    assert account.total_allocated == Decimal("65")
