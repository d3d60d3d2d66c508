from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from giftflow_api.models import (
    AlertType,
    ConditionTriggerType,
    CreditAccount,
    CreditTransaction,
    CreditTransactionType,
    GiftCard,
    GiftCardPool,
    GiftCardRedemption,
    GiftCardStatus,
    PipelineEvent,
    RecipientConditionStatus,
    RedemptionStatus,
    SmsOptInStatus,
    SystemAlert,
)
from giftflow_api.observability.rewards import get_reward_store
from giftflow_api.services.conditions.evaluator import ConditionEvaluator
from giftflow_api.services.conditions.sweep import find_due_time_delayed, sweep_time_delayed_conditions
from giftflow_api.services.delivery import DeliveryDispatcher
from giftflow_api.services.rewards.provisioner import RewardProvisioner
from giftflow_api.services.rewards.provisioning_service import GiftCardProvisioningService


def _evaluator(session, sms_backend) -> ConditionEvaluator:
    return ConditionEvaluator(session, dispatcher=DeliveryDispatcher(session, sms_backend=sms_backend))


async def _statuses(session, world) -> dict[int, RecipientConditionStatus]:
    rows = (
        await session.execute(
            select(RecipientConditionStatus).where(RecipientConditionStatus.recipient_id == world.recipient_id)
        )
    ).scalars()
    return {row.condition_number: row for row in rows}


@pytest.mark.asyncio
async def test_call_completed_triggers_and_delivers_reward(session_factory, build_world, sms_backend) -> None:
    world = await build_world(first_name="Jamie")

    async with session_factory() as session:
        result = await _evaluator(session, sms_backend).evaluate_conditions(
            world.recipient_id, world.campaign_id, "call_completed", {"source": "call"}
        )

    assert result.outcome == "triggered"
    assert result.condition_number == 1
    assert result.delivery is not None and result.delivery.sent
    assert result.as_payload()["deliveryStatus"] == "sent"

    recipient_phone, body = sms_backend.sent_messages[0]
    assert recipient_phone == world.phone
    assert body.startswith("Congratulations! You've earned a $25 Amazon gift card. Code: CARD-")
    assert f"/{result.redemption.redemption_token}" in body

    async with session_factory() as session:
        statuses = await _statuses(session, world)
        card = await session.get(GiftCard, result.redemption.gift_card_id)

    assert statuses[1].is_met is True
    assert statuses[1].triggered_at is not None
    assert card.status == GiftCardStatus.DELIVERED
    assert get_reward_store().snapshot().evaluations == {"triggered": 1}


@pytest.mark.asyncio
async def test_conditions_unlock_strictly_in_order(session_factory, build_world, sms_backend) -> None:
    world = await build_world(
        conditions=[
            {"number": 1, "trigger": ConditionTriggerType.CALL_COMPLETED, "reward": False},
            {"number": 2, "trigger": ConditionTriggerType.CRM_EVENT, "reward": False},
        ]
    )

    async with session_factory() as session:
        evaluator = _evaluator(session, sms_backend)
        early = await evaluator.evaluate_conditions(world.recipient_id, world.campaign_id, "crm_event", {})
        assert early.outcome == "no_match"
        assert await _statuses(session, world) == {}

        first = await evaluator.evaluate_conditions(world.recipient_id, world.campaign_id, "call_completed", {})
        second = await evaluator.evaluate_conditions(world.recipient_id, world.campaign_id, "crm_event", {})
        repeat = await evaluator.evaluate_conditions(world.recipient_id, world.campaign_id, "crm_event", {})

    assert (first.outcome, first.condition_number) == ("triggered", 1)
    assert (second.outcome, second.condition_number) == ("triggered", 2)
    assert (repeat.outcome, repeat.condition_number) == ("already_triggered", 2)

    async with session_factory() as session:
        statuses = await _statuses(session, world)

    assert set(statuses) == {1, 2}
    assert statuses[1].met_at <= statuses[2].met_at
    assert sms_backend.sent_messages == []


@pytest.mark.asyncio
async def test_crm_condition_can_require_a_specific_event(session_factory, build_world, sms_backend) -> None:
    world = await build_world(
        conditions=[
            {
                "number": 1,
                "trigger": ConditionTriggerType.CRM_EVENT,
                "crm_event_name": "hubspot.deal.closedwon",
                "reward": False,
            }
        ]
    )

    async with session_factory() as session:
        evaluator = _evaluator(session, sms_backend)
        other = await evaluator.evaluate_conditions(
            world.recipient_id, world.campaign_id, "crm_event", {"raw_event_type": "hubspot.contact.created"}
        )
        named = await evaluator.evaluate_conditions(
            world.recipient_id, world.campaign_id, "crm_event", {"raw_event_type": "hubspot.deal.closedwon"}
        )

    assert other.outcome == "no_match"
    assert named.outcome == "triggered"


@pytest.mark.asyncio
async def test_call_rewards_wait_for_sms_opt_in(session_factory, build_world, sms_backend) -> None:
    world = await build_world(opt_in=SmsOptInStatus.PENDING)

    async with session_factory() as session:
        result = await _evaluator(session, sms_backend).evaluate_conditions(
            world.recipient_id, world.campaign_id, "call_completed", {"source": "call"}
        )

    assert result.outcome == "opt_in_required"

    async with session_factory() as session:
        statuses = await _statuses(session, world)
        audit = await session.scalar(select(PipelineEvent).where(PipelineEvent.event_type == "condition.opt_in_required"))
        redemptions = await session.scalar(select(func.count()).select_from(GiftCardRedemption))

    assert statuses == {}
    assert audit is not None and audit.recipient_id == world.recipient_id
    assert redemptions == 0
    assert sms_backend.sent_messages == []


@pytest.mark.asyncio
async def test_failed_provisioning_is_retried_without_re_unlocking(session_factory, build_world, sms_backend) -> None:
    world = await build_world(cards=0)

    async with session_factory() as session:
        failed = await _evaluator(session, sms_backend).evaluate_conditions(
            world.recipient_id, world.campaign_id, "call_completed", {}
        )

    assert failed.outcome == "provisioning_failed"
    assert failed.error_code == "GC-003"

    async with session_factory() as session:
        statuses = await _statuses(session, world)
        alerts = (await session.execute(select(SystemAlert.alert_type))).scalars().all()
        account = await session.get(CreditAccount, world.account_id)

    assert statuses[1].is_met is True
    assert statuses[1].triggered_at is None
    assert statuses[1].attempt_count == 1
    assert statuses[1].last_error
    assert alerts == [AlertType.PROVISIONING_FAILURE]
    assert account.total_remaining == Decimal("100")
    first_met_at = statuses[1].met_at

    async with session_factory() as session:
        await session.execute(
            update(GiftCardPool).where(GiftCardPool.id == world.pool_id).values(available_cards=1, total_cards=1)
        )
        session.add(GiftCard(pool_id=world.pool_id, card_code="RESTOCK-1"))
        await session.commit()

    async with session_factory() as session:
        retried = await _evaluator(session, sms_backend).evaluate_conditions(
            world.recipient_id, world.campaign_id, "call_completed", {}
        )

    assert retried.outcome == "triggered"

    async with session_factory() as session:
        statuses = await _statuses(session, world)
        redemptions = (await session.execute(select(GiftCardRedemption))).scalars().all()
        account = await session.get(CreditAccount, world.account_id)

    assert len(statuses) == 1
    assert statuses[1].met_at == first_met_at
    assert statuses[1].triggered_at is not None
    assert statuses[1].last_error is None
    assert len(redemptions) == 1
    assert account.total_remaining == Decimal("75")


@pytest.mark.asyncio
async def test_time_delayed_condition_fires_after_delay(session_factory, build_world, sms_backend) -> None:
    world = await build_world(
        conditions=[
            {"number": 1, "trigger": ConditionTriggerType.CALL_COMPLETED},
            {"number": 2, "trigger": ConditionTriggerType.TIME_DELAYED, "delay_hours": Decimal("24")},
        ]
    )

    async with session_factory() as session:
        first = await _evaluator(session, sms_backend).evaluate_conditions(
            world.recipient_id, world.campaign_id, "call_completed", {"source": "call"}
        )
    assert first.outcome == "triggered"

    async with session_factory() as session:
        assert await find_due_time_delayed(session) == []
        premature = await _evaluator(session, sms_backend).evaluate_conditions(
            world.recipient_id, world.campaign_id, "time_delayed_trigger", {"condition_number": 2}
        )
    assert premature.outcome == "no_match"

    async with session_factory() as session:
        await session.execute(
            update(RecipientConditionStatus)
            .where(
                RecipientConditionStatus.recipient_id == world.recipient_id,
                RecipientConditionStatus.condition_number == 1,
            )
            .values(met_at=datetime.now(timezone.utc) - timedelta(hours=25))
        )
        await session.commit()

    async with session_factory() as session:
        summary = await sweep_time_delayed_conditions(
            session,
            triggered_by="test",
            evaluator_factory=lambda db: _evaluator(db, sms_backend),
        )

    assert summary.as_dict() == {"scanned": 1, "triggered": 1, "failed": 0, "skipped": 0, "errors": []}

    async with session_factory() as session:
        account = await session.get(CreditAccount, world.account_id)
        pool = await session.get(GiftCardPool, world.pool_id)
        redemptions = await session.scalar(select(func.count()).select_from(GiftCardRedemption))
        assert await find_due_time_delayed(session) == []

    assert account.total_remaining == Decimal("50")
    assert pool.available_cards == 1
    assert redemptions == 2
    assert len(sms_backend.sent_messages) == 2


@pytest.mark.asyncio
async def test_time_delayed_first_condition_never_fires(session_factory, build_world, sms_backend) -> None:
    world = await build_world(
        conditions=[{"number": 1, "trigger": ConditionTriggerType.TIME_DELAYED, "delay_hours": Decimal("1")}]
    )

    async with session_factory() as session:
        result = await _evaluator(session, sms_backend).evaluate_conditions(
            world.recipient_id, world.campaign_id, "time_delayed_trigger", {}
        )

    assert result.outcome == "no_match"


class _ContendedProvisioner(RewardProvisioner):
    """Runs a competing evaluation while this attempt holds the redemption."""

    def __init__(self, session, competitor) -> None:
        super().__init__(session)
        self._competitor = competitor

    async def provision(self, *args, **kwargs):
        await self._competitor()
        return await super().provision(*args, **kwargs)


@pytest.mark.asyncio
async def test_concurrent_retry_debits_and_claims_once(file_session_factory, build_file_world, sms_backend) -> None:
    world = await build_file_world(cards=0)

    async with file_session_factory() as session:
        failed = await _evaluator(session, sms_backend).evaluate_conditions(
            world.recipient_id, world.campaign_id, "call_completed", {}
        )
    assert failed.outcome == "provisioning_failed"

    async with file_session_factory() as session:
        await session.execute(
            update(GiftCardPool).where(GiftCardPool.id == world.pool_id).values(available_cards=2, total_cards=2)
        )
        session.add_all(
            [GiftCard(pool_id=world.pool_id, card_code="RESTOCK-1"), GiftCard(pool_id=world.pool_id, card_code="RESTOCK-2")]
        )
        await session.commit()

    competing = []

    async def competitor() -> None:
        async with file_session_factory() as other:
            competing.append(
                await _evaluator(other, sms_backend).evaluate_conditions(
                    world.recipient_id, world.campaign_id, "call_completed", {}
                )
            )

    async with file_session_factory() as session:
        provisioning = GiftCardProvisioningService(session, provisioner=_ContendedProvisioner(session, competitor))
        evaluator = ConditionEvaluator(
            session,
            provisioning_service=provisioning,
            dispatcher=DeliveryDispatcher(session, sms_backend=sms_backend),
        )
        winner = await evaluator.evaluate_conditions(world.recipient_id, world.campaign_id, "call_completed", {})

    assert winner.outcome == "triggered"
    assert competing[0].outcome == "provisioning_failed"
    assert competing[0].error_code == "provisioning_in_progress"

    async with file_session_factory() as session:
        account = await session.get(CreditAccount, world.account_id)
        debits = await session.scalar(
            select(func.count())
            .select_from(CreditTransaction)
            .where(CreditTransaction.transaction_type == CreditTransactionType.REDEMPTION)
        )
        claimed = await session.scalar(
            select(func.count()).select_from(GiftCard).where(GiftCard.status == GiftCardStatus.CLAIMED)
        )
        redemptions = (await session.execute(select(GiftCardRedemption))).scalars().all()

    assert account.total_remaining == Decimal("75")
    # The earlier failed attempt debited and refunded once.
    assert debits == 2
    assert claimed == 1
    assert [row.status for row in redemptions] == [RedemptionStatus.PROVISIONED]
    assert len(sms_backend.sent_messages) == 1
