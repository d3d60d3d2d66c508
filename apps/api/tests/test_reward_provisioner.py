from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select

from giftflow_api.models import (
    AlertSeverity,
    AlertType,
    GiftCard,
    GiftCardPool,
    GiftCardPoolType,
    GiftCardStatus,
    RewardSource,
    SystemAlert,
)
from giftflow_api.observability.rewards import get_reward_store
from giftflow_api.services.rewards.issuing_client import CardIssuingClient
from giftflow_api.services.rewards.provisioner import ProvisionedCard, ProvisioningFailure, RewardProvisioner


def _issuing_client(handler) -> CardIssuingClient:
    return CardIssuingClient(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def _offline_client() -> CardIssuingClient:
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not be called
        raise AssertionError(f"unexpected issuing call to {request.url}")

    return _issuing_client(handler)


async def _add_pool(session, world, *, cost: str, cards: int, created_at: datetime | None = None, **extra) -> GiftCardPool:
    pool = GiftCardPool(
        client_id=world.client_id,
        brand_id=world.brand_id,
        card_value=Decimal("25"),
        pool_type=extra.pop("pool_type", GiftCardPoolType.INVENTORY),
        cost_per_card=Decimal(cost),
        available_cards=cards,
        total_cards=cards,
        **extra,
    )
    if created_at is not None:
        pool.created_at = created_at
    session.add(pool)
    await session.flush()
    session.add_all([GiftCard(pool_id=pool.id, card_code=f"{cost}-{index}") for index in range(cards)])
    await session.commit()
    return pool


class _RacingSession:
    """Lets a competing claimer commit between candidate selection and the claim UPDATE."""

    def __init__(self, inner, race) -> None:
        self._inner = inner
        self._race = race
        self._raced = False

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def scalar(self, *args, **kwargs):
        value = await self._inner.scalar(*args, **kwargs)
        if not self._raced:
            self._raced = True
            await self._race()
        return value


@pytest.mark.asyncio
async def test_racing_claims_never_share_a_card(file_session_factory, build_file_world) -> None:
    world = await build_file_world(cards=2)
    competitor_cards: list[ProvisionedCard] = []

    async def competitor() -> None:
        async with file_session_factory() as other:
            claimed = await RewardProvisioner(other, issuing_client=_offline_client()).claim_from_inventory(
                world.brand_id, Decimal("25")
            )
            competitor_cards.append(claimed)

    async with file_session_factory() as session:
        racing = _RacingSession(session, competitor)
        claimed = await RewardProvisioner(racing, issuing_client=_offline_client()).claim_from_inventory(
            world.brand_id, Decimal("25"), recipient_id=world.recipient_id
        )

    assert claimed is not None
    assert competitor_cards[0] is not None
    assert claimed.card.id != competitor_cards[0].card.id
    assert claimed.card.claimed_by_recipient_id == world.recipient_id

    async with file_session_factory() as session:
        pool = await session.get(GiftCardPool, world.pool_id)
        claimed_count = await session.scalar(
            select(func.count()).select_from(GiftCard).where(GiftCard.status == GiftCardStatus.CLAIMED)
        )
        exhausted = await RewardProvisioner(session, issuing_client=_offline_client()).claim_from_inventory(
            world.brand_id, Decimal("25")
        )

    assert pool.available_cards == 0
    assert claimed_count == 2
    assert exhausted is None


@pytest.mark.asyncio
async def test_cheapest_pool_is_claimed_first(session_factory, build_world) -> None:
    world = await build_world(cards=1, cost_per_card="24")

    async with session_factory() as session:
        cheap = await _add_pool(session, world, cost="21", cards=1)

    async with session_factory() as session:
        result = await RewardProvisioner(session, issuing_client=_offline_client()).provision(
            world.brand_id, Decimal("25"), recipient_id=world.recipient_id
        )

    assert isinstance(result, ProvisionedCard)
    assert result.pool.id == cheap.id
    assert result.source == RewardSource.INVENTORY
    assert result.cost == Decimal("21")
    assert get_reward_store().snapshot().provisioning == {"source:inventory": 1}


@pytest.mark.asyncio
async def test_equal_cost_pools_drain_oldest_first(session_factory, build_world) -> None:
    world = await build_world(cards=0)
    base = datetime.now(timezone.utc) - timedelta(days=2)

    async with session_factory() as session:
        newer = await _add_pool(session, world, cost="22", cards=1, created_at=base + timedelta(hours=1))
        older = await _add_pool(session, world, cost="22", cards=1, created_at=base)

    async with session_factory() as session:
        provisioner = RewardProvisioner(session, issuing_client=_offline_client())
        first = await provisioner.claim_from_inventory(world.brand_id, Decimal("25"))
        second = await provisioner.claim_from_inventory(world.brand_id, Decimal("25"))

    assert first.pool.id == older.id
    assert second.pool.id == newer.id


@pytest.mark.asyncio
async def test_expired_cards_are_skipped(session_factory, build_world) -> None:
    world = await build_world(cards=0)

    async with session_factory() as session:
        pool = await _add_pool(session, world, cost="20", cards=0)
        pool.available_cards = 1
        pool.total_cards = 1
        session.add(
            GiftCard(pool_id=pool.id, card_code="EXPIRED", expiration_date=datetime.now(timezone.utc).date() - timedelta(days=1))
        )
        await session.commit()

    async with session_factory() as session:
        claimed = await RewardProvisioner(session, issuing_client=_offline_client()).claim_from_inventory(
            world.brand_id, Decimal("25")
        )

    assert claimed is None


@pytest.mark.asyncio
async def test_api_pool_issues_when_inventory_is_empty(session_factory, build_world) -> None:
    world = await build_world(cards=0)
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            201,
            json={
                "transactionId": "tx-991",
                "card": {"cardCode": "API-CODE-1", "cardNumber": "4111", "expirationDate": "2027-01-31"},
            },
        )

    async with session_factory() as session:
        await _add_pool(
            session,
            world,
            cost="23",
            cards=0,
            pool_type=GiftCardPoolType.API_CONFIG,
            api_config={"url": "https://issuer.test/v1/cards", "apiKey": "issuer-key", "currency": "USD"},
        )

    async with session_factory() as session:
        result = await RewardProvisioner(session, issuing_client=_issuing_client(handler)).provision(
            world.brand_id, Decimal("25"), recipient_id=world.recipient_id, reference="ref-1"
        )

    assert isinstance(result, ProvisionedCard)
    assert result.source == RewardSource.API
    assert result.card.card_code == "API-CODE-1"
    assert result.card.status == GiftCardStatus.DELIVERED
    assert result.card.provider_transaction_id == "tx-991"
    assert str(result.card.expiration_date) == "2027-01-31"

    sent = requests[0]
    assert sent.headers["Authorization"] == "Bearer issuer-key"
    assert b'"reference":"ref-1"' in sent.content.replace(b" ", b"")


@pytest.mark.asyncio
async def test_failed_api_tier_raises_critical_alert(session_factory, build_world) -> None:
    world = await build_world(cards=0)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "issuer down"})

    async with session_factory() as session:
        await _add_pool(
            session,
            world,
            cost="23",
            cards=0,
            pool_type=GiftCardPoolType.API_CONFIG,
            api_config={"url": "https://issuer.test/v1/cards"},
        )

    async with session_factory() as session:
        result = await RewardProvisioner(session, issuing_client=_issuing_client(handler)).provision(
            world.brand_id, Decimal("25"), recipient_id=world.recipient_id, campaign_id=world.campaign_id
        )

    assert isinstance(result, ProvisioningFailure)
    assert result.code == "GC-004"
    assert result.alert_id is not None

    async with session_factory() as session:
        alert = await session.get(SystemAlert, result.alert_id)

    assert alert.severity == AlertSeverity.CRITICAL
    assert alert.alert_type == AlertType.PROVISIONING_FAILURE
    assert alert.metadata_json["campaign_id"] == str(world.campaign_id)
    assert get_reward_store().snapshot().provisioning == {"failures": 1, "error:GC-004": 1}


@pytest.mark.asyncio
async def test_no_inventory_and_no_api_pools(session_factory, build_world) -> None:
    world = await build_world(cards=0)

    async with session_factory() as session:
        result = await RewardProvisioner(session, issuing_client=_offline_client()).provision(
            world.brand_id, Decimal("25")
        )

    assert isinstance(result, ProvisioningFailure)
    assert result.code == "GC-003"
    assert result.attempts == [
        "inventory:no pools with available cards",
        "api:no issuing pools configured",
    ]


@pytest.mark.asyncio
async def test_claims_alert_when_pool_runs_low_and_empty(session_factory, build_world) -> None:
    world = await build_world(cards=3)

    async with session_factory() as session:
        provisioner = RewardProvisioner(session, issuing_client=_offline_client(), low_inventory_threshold=3)
        for _ in range(3):
            assert await provisioner.claim_from_inventory(world.brand_id, Decimal("25")) is not None

    async with session_factory() as session:
        rows = (
            await session.execute(select(SystemAlert).where(SystemAlert.alert_type == AlertType.LOW_INVENTORY))
        ).scalars().all()

    alerts = sorted(rows, key=lambda alert: -alert.metadata_json["available_cards"])
    assert [alert.severity for alert in alerts] == [AlertSeverity.WARNING, AlertSeverity.CRITICAL]
    assert alerts[0].metadata_json["available_cards"] == 2
    assert alerts[1].metadata_json["available_cards"] == 0
    assert alerts[1].metadata_json["pool_id"] == str(world.pool_id)
