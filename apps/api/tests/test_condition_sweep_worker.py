from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from giftflow_api.models import ConditionTriggerType, RecipientConditionStatus
from giftflow_api.services.conditions.evaluator import ConditionEvaluator
from giftflow_api.services.conditions.sweep import find_due_time_delayed, sweep_time_delayed_conditions
from giftflow_api.services.delivery import DeliveryDispatcher
from giftflow_api.workers.condition_sweep import ConditionSweepWorker


def _evaluator_factory(sms_backend):
    def factory(session):
        return ConditionEvaluator(session, dispatcher=DeliveryDispatcher(session, sms_backend=sms_backend))

    return factory


async def _world_with_elapsed_delay(session_factory, build_world, sms_backend):
    world = await build_world(
        conditions=[
            {"number": 1, "trigger": ConditionTriggerType.CALL_COMPLETED, "reward": False},
            {"number": 2, "trigger": ConditionTriggerType.TIME_DELAYED, "delay_hours": Decimal("2")},
        ]
    )
    async with session_factory() as session:
        result = await _evaluator_factory(sms_backend)(session).evaluate_conditions(
            world.recipient_id, world.campaign_id, "call_completed", {}
        )
    assert result.outcome == "triggered"

    async with session_factory() as session:
        await session.execute(
            update(RecipientConditionStatus)
            .where(RecipientConditionStatus.recipient_id == world.recipient_id)
            .values(met_at=datetime.now(timezone.utc) - timedelta(hours=3))
        )
        await session.commit()
    return world


@pytest.mark.asyncio
async def test_run_once_fires_due_conditions(session_factory, build_world, sms_backend) -> None:
    await _world_with_elapsed_delay(session_factory, build_world, sms_backend)
    worker = ConditionSweepWorker(session_factory, evaluator_factory=_evaluator_factory(sms_backend), limit=10)

    summary = await worker.run_once(triggered_by="manual")

    assert summary.triggered == 1
    assert summary.failed == 0
    assert len(sms_backend.sent_messages) == 1

    health = worker.health()
    assert health["running"] is False
    assert health["lastRunAt"] is not None
    assert health["lastSummary"]["triggered"] == 1
    assert health["lastError"] is None

    second = await worker.run_once()
    assert second.scanned == 0


@pytest.mark.asyncio
async def test_worker_loop_starts_and_stops(session_factory, build_world, sms_backend) -> None:
    await _world_with_elapsed_delay(session_factory, build_world, sms_backend)
    worker = ConditionSweepWorker(session_factory, evaluator_factory=_evaluator_factory(sms_backend), interval_seconds=1)

    worker.start()
    assert worker.is_running is True
    for _ in range(50):
        if worker.last_run_at is not None:
            break
        await asyncio.sleep(0.05)
    await worker.stop()

    assert worker.is_running is False
    assert worker.last_summary is not None
    assert worker.last_summary.triggered == 1


class _FlakyEvaluator(ConditionEvaluator):
    def __init__(self, session, sms_backend, broken_recipient_id) -> None:
        super().__init__(session, dispatcher=DeliveryDispatcher(session, sms_backend=sms_backend))
        self._broken_recipient_id = broken_recipient_id

    async def evaluate_conditions(self, recipient_id, *args, **kwargs):
        if recipient_id == self._broken_recipient_id:
            raise OperationalError("SELECT campaigns", {}, Exception("database is locked"))
        return await super().evaluate_conditions(recipient_id, *args, **kwargs)


@pytest.mark.asyncio
async def test_database_error_on_one_candidate_does_not_abort_the_sweep(
    session_factory, build_world, sms_backend
) -> None:
    broken = await _world_with_elapsed_delay(session_factory, build_world, sms_backend)
    await _world_with_elapsed_delay(session_factory, build_world, sms_backend)

    async with session_factory() as session:
        summary = await sweep_time_delayed_conditions(
            session,
            evaluator_factory=lambda db: _FlakyEvaluator(db, sms_backend, broken.recipient_id),
        )

    assert summary.scanned == 2
    assert summary.triggered == 1
    assert summary.failed == 1
    assert summary.errors == [f"{broken.recipient_id}:2:database error"]

    async with session_factory() as session:
        remaining = await find_due_time_delayed(session)

    assert [candidate.recipient_id for candidate in remaining] == [broken.recipient_id]
    assert len(sms_backend.sent_messages) == 1


@pytest.mark.asyncio
async def test_repeatedly_failing_candidates_go_to_the_back(session_factory, build_world, sms_backend) -> None:
    failing = await _world_with_elapsed_delay(session_factory, build_world, sms_backend)
    fresh = await _world_with_elapsed_delay(session_factory, build_world, sms_backend)

    async with session_factory() as session:
        await session.execute(
            update(RecipientConditionStatus)
            .where(RecipientConditionStatus.recipient_id == failing.recipient_id)
            .values(met_at=datetime.now(timezone.utc) - timedelta(hours=5))
        )
        session.add(
            RecipientConditionStatus(
                recipient_id=failing.recipient_id,
                campaign_id=failing.campaign_id,
                condition_number=2,
                is_met=True,
                met_at=datetime.now(timezone.utc),
                attempt_count=4,
                last_error="No gift cards available",
            )
        )
        await session.commit()

    async with session_factory() as session:
        first_batch = await find_due_time_delayed(session, limit=1)
        everything = await find_due_time_delayed(session)

    assert [candidate.recipient_id for candidate in first_batch] == [fresh.recipient_id]
    assert [candidate.recipient_id for candidate in everything] == [fresh.recipient_id, failing.recipient_id]
