from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from giftflow_api.core.settings import settings
from giftflow_api.models import (
    CreditAccount,
    CreditTransaction,
    CreditTransactionType,
    GiftCardPool,
    GiftCardRedemption,
    RedemptionStatus,
    RewardSource,
)
from giftflow_api.services.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from giftflow_api.services.rewards.provisioner import RewardProvisioner
from giftflow_api.services.rewards.provisioning_service import GiftCardProvisioningService


async def _provision(session, world, **overrides):
    params = {
        "campaign_id": world.campaign_id,
        "brand_id": world.brand_id,
        "denomination": 25,
        "recipient_id": world.recipient_id,
        "condition_number": 1,
    }
    params.update(overrides)
    return await GiftCardProvisioningService(session).provision_gift_card(**params)


@pytest.mark.asyncio
async def test_provisioning_debits_then_claims(session_factory, build_world) -> None:
    world = await build_world()

    async with session_factory() as session:
        outcome = await _provision(session, world)

    assert outcome.success is True
    assert outcome.source == RewardSource.INVENTORY
    assert outcome.credit_remaining == Decimal("75")
    payload = outcome.as_payload()
    assert payload["alreadyProvisioned"] is False
    assert payload["card"]["cardValue"] == 25.0
    assert payload["redemption"]["status"] == "provisioned"

    async with session_factory() as session:
        redemption = await session.get(GiftCardRedemption, outcome.redemption.id)
        pool = await session.get(GiftCardPool, world.pool_id)

    assert redemption.status == RedemptionStatus.PROVISIONED
    assert redemption.amount_charged == Decimal("25")
    assert redemption.account_charged_id == world.account_id
    assert redemption.redemption_code == world.redemption_code
    assert redemption.redemption_token
    assert pool.available_cards == 2


@pytest.mark.asyncio
async def test_replay_for_same_condition_is_idempotent(session_factory, build_world) -> None:
    world = await build_world()

    async with session_factory() as session:
        first = await _provision(session, world)
    async with session_factory() as session:
        second = await _provision(session, world)

    assert second.success is True
    assert second.already_provisioned is True
    assert second.redemption.id == first.redemption.id
    assert second.card.id == first.card.id

    async with session_factory() as session:
        account = await session.get(CreditAccount, world.account_id)
        redemptions = await session.scalar(select(func.count()).select_from(GiftCardRedemption))
        pool = await session.get(GiftCardPool, world.pool_id)

    assert account.total_remaining == Decimal("75")
    assert redemptions == 1
    assert pool.available_cards == 2


@pytest.mark.asyncio
async def test_insufficient_credit_leaves_inventory_untouched(session_factory, build_world) -> None:
    world = await build_world(balance="10")

    async with session_factory() as session:
        outcome = await _provision(session, world)

    assert outcome.success is False
    assert outcome.error_code == "GC-006"
    assert outcome.as_payload() == {"success": False, "error": outcome.error, "errorCode": "GC-006"}

    async with session_factory() as session:
        pool = await session.get(GiftCardPool, world.pool_id)
        account = await session.get(CreditAccount, world.account_id)

    assert pool.available_cards == 3
    assert account.total_remaining == Decimal("10")


@pytest.mark.asyncio
async def test_failed_provisioning_refunds_the_debit(session_factory, build_world) -> None:
    world = await build_world(cards=0)

    async with session_factory() as session:
        outcome = await _provision(session, world)

    assert outcome.success is False
    assert outcome.error_code == "GC-003"

    async with session_factory() as session:
        account = await session.get(CreditAccount, world.account_id)
        kinds = (await session.execute(select(CreditTransaction.transaction_type))).scalars().all()
        redemption = await session.scalar(select(GiftCardRedemption))

    assert account.total_remaining == Decimal("100")
    assert sorted(kind.value for kind in kinds) == ["redemption", "refund"]
    assert CreditTransactionType.REFUND in kinds
    # The reservation stays pending so a retry reuses it.
    assert redemption.status == RedemptionStatus.PENDING


@pytest.mark.asyncio
async def test_cross_tenant_recipient_is_forbidden(session_factory, build_world) -> None:
    world = await build_world()
    stranger = await build_world()

    async with session_factory() as session:
        with pytest.raises(ForbiddenError):
            await _provision(session, world, recipient_id=stranger.recipient_id)


@pytest.mark.asyncio
async def test_missing_or_invalid_parameters(session_factory, build_world) -> None:
    world = await build_world()

    async with session_factory() as session:
        with pytest.raises(ValidationError) as missing:
            await _provision(session, world, brand_id=None)
        with pytest.raises(ValidationError) as negative:
            await _provision(session, world, denomination="-5")
        with pytest.raises(NotFoundError) as unknown_brand:
            await _provision(session, world, brand_id=world.campaign_id)

    assert missing.value.code == "GC-012"
    assert negative.value.code == "GC-012"
    assert unknown_brand.value.code == "GC-002"


class _FailingProvisioner(RewardProvisioner):
    async def provision(self, brand_id, denomination, **kwargs):
        raise OperationalError("UPDATE gift_cards", {}, Exception("disk I/O error"))


@pytest.mark.asyncio
async def test_database_error_while_claiming_refunds_the_debit(session_factory, build_world) -> None:
    world = await build_world()

    async with session_factory() as session:
        service = GiftCardProvisioningService(session, provisioner=_FailingProvisioner(session))
        outcome = await service.provision_gift_card(
            campaign_id=world.campaign_id,
            brand_id=world.brand_id,
            denomination=25,
            recipient_id=world.recipient_id,
            condition_number=1,
        )

    assert outcome.success is False
    assert outcome.error_code == "GC-015"

    async with session_factory() as session:
        account = await session.get(CreditAccount, world.account_id)
        kinds = (await session.execute(select(CreditTransaction.transaction_type))).scalars().all()
        redemption = await session.scalar(select(GiftCardRedemption))
        pool = await session.get(GiftCardPool, world.pool_id)

    assert account.total_remaining == Decimal("100")
    assert sorted(kind.value for kind in kinds) == ["redemption", "refund"]
    assert redemption.status == RedemptionStatus.PENDING
    assert redemption.provisioning_lease is None
    assert pool.available_cards == 3

    async with session_factory() as session:
        retried = await _provision(session, world)

    assert retried.success is True
    assert retried.redemption.id == redemption.id


@pytest.mark.asyncio
async def test_leased_redemption_rejects_a_second_attempt(session_factory, build_world) -> None:
    world = await build_world(cards=0)

    async with session_factory() as session:
        failed = await _provision(session, world)
    assert failed.success is False

    async with session_factory() as session:
        redemption = await session.scalar(select(GiftCardRedemption))
        await session.execute(
            update(GiftCardRedemption)
            .where(GiftCardRedemption.id == redemption.id)
            .values(provisioning_lease="held-elsewhere", provisioning_started_at=datetime.now(timezone.utc))
        )
        await session.commit()

    async with session_factory() as session:
        with pytest.raises(ConflictError) as excinfo:
            await _provision(session, world)

    assert excinfo.value.code == "provisioning_in_progress"

    async with session_factory() as session:
        account = await session.get(CreditAccount, world.account_id)

    # Only the first attempt's debit and refund.
    assert account.total_remaining == Decimal("100")


@pytest.mark.asyncio
async def test_abandoned_lease_is_taken_over(session_factory, build_world) -> None:
    world = await build_world()

    async with session_factory() as session:
        session.add(
            GiftCardRedemption(
                campaign_id=world.campaign_id,
                recipient_id=world.recipient_id,
                condition_number=1,
                redemption_token="stale-token",
                status=RedemptionStatus.PENDING,
                provisioning_lease="crashed-worker",
                provisioning_started_at=datetime.now(timezone.utc)
                - timedelta(seconds=settings.provisioning_lease_seconds + 60),
            )
        )
        await session.commit()

    async with session_factory() as session:
        outcome = await _provision(session, world)

    assert outcome.success is True
    assert outcome.redemption.redemption_token == "stale-token"

    async with session_factory() as session:
        redemption = await session.scalar(select(GiftCardRedemption))

    assert redemption.status == RedemptionStatus.PROVISIONED
    assert redemption.provisioning_lease is None
    assert redemption.provisioning_started_at is None
