"""Condition state machine: ``not_started -> prerequisite_met -> triggered``.

``is_met`` and ``triggered_at`` are deliberately separate. Unlocking a
condition happens once; provisioning may fail and is retried on later
evaluations for as long as ``triggered_at`` stays null.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.models.campaign import (
    Campaign,
    CampaignCondition,
    ConditionTriggerType,
    RecipientConditionStatus,
)
from giftflow_api.models.pipeline_event import EventSource, PipelineEvent
from giftflow_api.models.recipient import Recipient, SmsOptInStatus
from giftflow_api.models.redemption import GiftCardRedemption
from giftflow_api.observability.rewards import get_reward_store
from giftflow_api.observability.tracing import pipeline_span
from giftflow_api.services.delivery.dispatcher import DeliveryDispatcher, DeliveryResult
from giftflow_api.services.errors import NotFoundError, RewardPipelineError
from giftflow_api.services.rewards.alerts import jsonable
from giftflow_api.services.rewards.provisioning_service import GiftCardProvisioningService

CALL_COMPLETED_EVENT = "call_completed"
CRM_EVENT = "crm_event"
TIME_DELAYED_EVENT = "time_delayed_trigger"

OUTCOME_TRIGGERED = "triggered"
OUTCOME_NO_MATCH = "no_match"
OUTCOME_OPT_IN_REQUIRED = "opt_in_required"
OUTCOME_PROVISIONING_FAILED = "provisioning_failed"
OUTCOME_ALREADY_TRIGGERED = "already_triggered"


@dataclass(slots=True)
class EvaluationResult:
    outcome: str
    condition_number: int | None = None
    redemption: GiftCardRedemption | None = None
    delivery: DeliveryResult | None = None
    error: str | None = None
    error_code: str | None = None

    @property
    def triggered(self) -> bool:
        return self.outcome == OUTCOME_TRIGGERED

    def as_payload(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "conditionNumber": self.condition_number,
            "redemptionId": str(self.redemption.id) if self.redemption is not None else None,
            "deliveryStatus": self.delivery.status.value if self.delivery is not None else None,
            "error": self.error,
            "errorCode": self.error_code,
        }


@dataclass(slots=True)
class _ConditionSnapshot:
    number: int
    trigger_type: ConditionTriggerType
    crm_event_name: str | None
    time_delay_hours: Decimal | None
    brand_id: UUID | None
    card_value: Decimal | None
    sms_template: str | None


@dataclass(slots=True)
class _StatusSnapshot:
    is_met: bool
    met_at: datetime | None
    triggered: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _target_condition(metadata: Mapping[str, Any]) -> int | None:
    raw = metadata.get("condition_number")
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def is_call_sourced(event_type: str, metadata: Mapping[str, Any]) -> bool:
    return event_type == CALL_COMPLETED_EVENT or metadata.get("source") == "call"


def condition_matches(condition: _ConditionSnapshot, event_type: str, metadata: Mapping[str, Any]) -> bool:
    target = _target_condition(metadata)
    if target is not None and target != condition.number:
        return False
    if condition.trigger_type == ConditionTriggerType.CALL_COMPLETED:
        return event_type == CALL_COMPLETED_EVENT
    if condition.trigger_type == ConditionTriggerType.CRM_EVENT:
        if event_type != CRM_EVENT:
            return False
        if condition.crm_event_name:
            names = {metadata.get("raw_event_type"), metadata.get("crm_event_type")}
            return condition.crm_event_name in names
        return True
    if condition.trigger_type == ConditionTriggerType.TIME_DELAYED:
        return event_type == TIME_DELAYED_EVENT
    return False


class ConditionEvaluator:
    """Advance one recipient through a campaign's ordered conditions."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        provisioning_service: GiftCardProvisioningService | None = None,
        dispatcher: DeliveryDispatcher | None = None,
    ) -> None:
        self._db = db_session
        self._provisioning = provisioning_service or GiftCardProvisioningService(db_session)
        self._dispatcher = dispatcher or DeliveryDispatcher(db_session)
        self._store = get_reward_store()

    async def evaluate_conditions(
        self,
        recipient_id: UUID,
        campaign_id: UUID,
        event_type: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> EvaluationResult:
        metadata = dict(metadata or {})
        with pipeline_span(
            "evaluate_conditions",
            recipient_id=recipient_id,
            campaign_id=campaign_id,
            event_type=event_type,
        ):
            result = await self._evaluate(recipient_id, campaign_id, event_type, metadata)
        self._store.record_evaluation(result.outcome)
        logger.info(
            "Conditions evaluated",
            recipient_id=str(recipient_id),
            campaign_id=str(campaign_id),
            event_type=event_type,
            outcome=result.outcome,
            condition_number=result.condition_number,
        )
        return result

    async def _evaluate(
        self,
        recipient_id: UUID,
        campaign_id: UUID,
        event_type: str,
        metadata: Dict[str, Any],
    ) -> EvaluationResult:
        campaign = await self._db.get(Campaign, campaign_id)
        if campaign is None:
            raise NotFoundError("Campaign not found")
        recipient = await self._db.get(Recipient, recipient_id)
        if recipient is None:
            raise NotFoundError("Recipient not found")
        opted_in = recipient.sms_opt_in_status == SmsOptInStatus.OPTED_IN
        campaign_template = campaign.sms_template

        rows = (
            await self._db.execute(
                select(CampaignCondition)
                .where(CampaignCondition.campaign_id == campaign_id, CampaignCondition.is_active.is_(True))
                .order_by(CampaignCondition.condition_number.asc())
            )
        ).scalars()
        conditions = [
            _ConditionSnapshot(
                number=row.condition_number,
                trigger_type=row.trigger_type,
                crm_event_name=row.crm_event_name,
                time_delay_hours=row.time_delay_hours,
                brand_id=row.brand_id,
                card_value=row.card_value,
                sms_template=row.sms_template,
            )
            for row in rows
        ]
        statuses = await self._load_statuses(recipient_id, campaign_id)

        candidate: _ConditionSnapshot | None = None
        matched_triggered: int | None = None
        now = _utcnow()
        for condition in conditions:
            if not condition_matches(condition, event_type, metadata):
                continue
            status = statuses.get(condition.number)
            if status is not None and status.triggered:
                matched_triggered = condition.number
                continue
            if not self._prerequisite_met(condition, statuses, now):
                continue
            candidate = condition
            break

        if candidate is None:
            if matched_triggered is not None:
                return EvaluationResult(outcome=OUTCOME_ALREADY_TRIGGERED, condition_number=matched_triggered)
            return EvaluationResult(outcome=OUTCOME_NO_MATCH)

        if is_call_sourced(event_type, metadata) and not opted_in:
            await self._record_opt_in_block(recipient_id, campaign_id, candidate.number, event_type, metadata)
            return EvaluationResult(outcome=OUTCOME_OPT_IN_REQUIRED, condition_number=candidate.number)

        status_id = await self._ensure_status(recipient_id, campaign_id, candidate.number)
        await self._mark_met(status_id)

        if candidate.brand_id is None or candidate.card_value is None:
            if await self._mark_triggered(status_id):
                return EvaluationResult(outcome=OUTCOME_TRIGGERED, condition_number=candidate.number)
            return EvaluationResult(outcome=OUTCOME_ALREADY_TRIGGERED, condition_number=candidate.number)

        try:
            outcome = await self._provisioning.provision_gift_card(
                campaign_id=campaign_id,
                brand_id=candidate.brand_id,
                denomination=candidate.card_value,
                recipient_id=recipient_id,
                condition_number=candidate.number,
            )
        except RewardPipelineError as exc:
            await self._record_failure(status_id, exc.message)
            return EvaluationResult(
                outcome=OUTCOME_PROVISIONING_FAILED,
                condition_number=candidate.number,
                error=exc.message,
                error_code=exc.code,
            )

        if not outcome.success:
            await self._record_failure(status_id, outcome.error or "provisioning failed")
            return EvaluationResult(
                outcome=OUTCOME_PROVISIONING_FAILED,
                condition_number=candidate.number,
                error=outcome.error,
                error_code=outcome.error_code,
            )

        redemption_id = outcome.redemption.id
        if not await self._mark_triggered(status_id):
            redemption = await self._db.get(GiftCardRedemption, redemption_id)
            return EvaluationResult(
                outcome=OUTCOME_ALREADY_TRIGGERED,
                condition_number=candidate.number,
                redemption=redemption,
            )

        delivery = await self._dispatch(redemption_id, candidate.sms_template or campaign_template)
        redemption = await self._db.get(GiftCardRedemption, redemption_id)
        return EvaluationResult(
            outcome=OUTCOME_TRIGGERED,
            condition_number=candidate.number,
            redemption=redemption,
            delivery=delivery,
        )

    async def _load_statuses(self, recipient_id: UUID, campaign_id: UUID) -> Dict[int, _StatusSnapshot]:
        rows = (
            await self._db.execute(
                select(RecipientConditionStatus).where(
                    RecipientConditionStatus.recipient_id == recipient_id,
                    RecipientConditionStatus.campaign_id == campaign_id,
                )
            )
        ).scalars()
        return {
            row.condition_number: _StatusSnapshot(
                is_met=bool(row.is_met),
                met_at=_as_utc(row.met_at),
                triggered=row.triggered_at is not None,
            )
            for row in rows
        }

    @staticmethod
    def _prerequisite_met(
        condition: _ConditionSnapshot,
        statuses: Mapping[int, _StatusSnapshot],
        now: datetime,
    ) -> bool:
        if condition.number <= 1:
            # A delay needs an earlier milestone to count from.
            return condition.trigger_type != ConditionTriggerType.TIME_DELAYED
        previous = statuses.get(condition.number - 1)
        if previous is None or not previous.is_met:
            return False
        if condition.trigger_type == ConditionTriggerType.TIME_DELAYED:
            if previous.met_at is None:
                return False
            delay = timedelta(hours=float(condition.time_delay_hours or 0))
            return previous.met_at + delay <= now
        return True

    async def _ensure_status(self, recipient_id: UUID, campaign_id: UUID, condition_number: int) -> UUID:
        stmt = select(RecipientConditionStatus.id).where(
            RecipientConditionStatus.recipient_id == recipient_id,
            RecipientConditionStatus.campaign_id == campaign_id,
            RecipientConditionStatus.condition_number == condition_number,
        )
        existing = await self._db.scalar(stmt)
        if existing is not None:
            return existing

        status = RecipientConditionStatus(
            recipient_id=recipient_id,
            campaign_id=campaign_id,
            condition_number=condition_number,
            is_met=False,
            attempt_count=0,
        )
        self._db.add(status)
        try:
            await self._db.commit()
        except IntegrityError:
            await self._db.rollback()
            existing = await self._db.scalar(stmt)
            if existing is None:
                raise
            return existing
        return status.id

    async def _mark_met(self, status_id: UUID) -> None:
        await self._db.execute(
            update(RecipientConditionStatus)
            .where(RecipientConditionStatus.id == status_id, RecipientConditionStatus.is_met.is_(False))
            .values(is_met=True, met_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()

    async def _mark_triggered(self, status_id: UUID) -> bool:
        result = await self._db.execute(
            update(RecipientConditionStatus)
            .where(RecipientConditionStatus.id == status_id, RecipientConditionStatus.triggered_at.is_(None))
            .values(triggered_at=_utcnow(), last_error=None)
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()
        return result.rowcount == 1

    async def _record_failure(self, status_id: UUID, error: str) -> None:
        await self._db.execute(
            update(RecipientConditionStatus)
            .where(RecipientConditionStatus.id == status_id)
            .values(
                attempt_count=RecipientConditionStatus.attempt_count + 1,
                last_error=error[:500],
            )
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()
        logger.warning("Condition reward provisioning failed", status_id=str(status_id), error=error)

    async def _record_opt_in_block(
        self,
        recipient_id: UUID,
        campaign_id: UUID,
        condition_number: int,
        event_type: str,
        metadata: Mapping[str, Any],
    ) -> None:
        now = _utcnow()
        audit = PipelineEvent(
            source=EventSource.SYSTEM,
            provider="condition_evaluator",
            event_type="condition.opt_in_required",
            raw_event_type=event_type,
            campaign_id=campaign_id,
            recipient_id=recipient_id,
            raw_payload={"condition_number": condition_number, "metadata": jsonable(dict(metadata))},
            matched=True,
            condition_triggered=False,
            processed=True,
            processed_at=now,
        )
        self._db.add(audit)
        try:
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Failed to record opt-in audit event", recipient_id=str(recipient_id), error=str(exc))
        logger.info(
            "Condition blocked until recipient opts in",
            recipient_id=str(recipient_id),
            campaign_id=str(campaign_id),
            condition_number=condition_number,
        )

    async def _dispatch(self, redemption_id: UUID, template: str | None) -> DeliveryResult | None:
        try:
            return await self._dispatcher.deliver(redemption_id, template=template)
        except (RewardPipelineError, SQLAlchemyError) as exc:
            await self._db.rollback()
            logger.exception("Reward delivery raised", redemption_id=str(redemption_id), error=str(exc))
            return None


__all__ = [
    "CALL_COMPLETED_EVENT",
    "CRM_EVENT",
    "ConditionEvaluator",
    "EvaluationResult",
    "OUTCOME_ALREADY_TRIGGERED",
    "OUTCOME_NO_MATCH",
    "OUTCOME_OPT_IN_REQUIRED",
    "OUTCOME_PROVISIONING_FAILED",
    "OUTCOME_TRIGGERED",
    "TIME_DELAYED_EVENT",
    "condition_matches",
    "is_call_sourced",
]
