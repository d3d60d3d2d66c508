"""Periodic sweep firing time-delayed conditions through the evaluator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.models.campaign import (
    Campaign,
    CampaignCondition,
    CampaignStatus,
    ConditionTriggerType,
    RecipientConditionStatus,
)
from giftflow_api.services.conditions.evaluator import (
    OUTCOME_PROVISIONING_FAILED,
    OUTCOME_TRIGGERED,
    TIME_DELAYED_EVENT,
    ConditionEvaluator,
)
from giftflow_api.services.errors import RewardPipelineError


@dataclass(slots=True)
class SweepCandidate:
    recipient_id: UUID
    campaign_id: UUID
    condition_number: int
    due_at: datetime


@dataclass(slots=True)
class SweepSummary:
    scanned: int = 0
    triggered: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "triggered": self.triggered,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


async def find_due_time_delayed(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    limit: int = 200,
) -> list[SweepCandidate]:
    """Recipients whose prerequisite has been met for at least the condition's delay."""

    now = now or datetime.now(timezone.utc)
    previous = aliased(RecipientConditionStatus)
    current = aliased(RecipientConditionStatus)
    stmt = (
        select(
            previous.recipient_id,
            previous.campaign_id,
            previous.met_at,
            CampaignCondition.condition_number,
            CampaignCondition.time_delay_hours,
        )
        .join(
            CampaignCondition,
            and_(
                CampaignCondition.campaign_id == previous.campaign_id,
                CampaignCondition.condition_number == previous.condition_number + 1,
            ),
        )
        .join(Campaign, Campaign.id == CampaignCondition.campaign_id)
        .outerjoin(
            current,
            and_(
                current.recipient_id == previous.recipient_id,
                current.campaign_id == previous.campaign_id,
                current.condition_number == CampaignCondition.condition_number,
            ),
        )
        .where(
            CampaignCondition.trigger_type == ConditionTriggerType.TIME_DELAYED,
            CampaignCondition.is_active.is_(True),
            Campaign.status == CampaignStatus.ACTIVE,
            previous.is_met.is_(True),
            previous.met_at.is_not(None),
            current.triggered_at.is_(None),
        )
        # Fresh candidates first so repeatedly failing ones cannot fill every batch.
        .order_by(func.coalesce(current.attempt_count, 0).asc(), previous.met_at.asc())
    )

    due: list[SweepCandidate] = []
    for recipient_id, campaign_id, met_at, condition_number, delay_hours in (await session.execute(stmt)).all():
        due_at = _as_utc(met_at) + timedelta(hours=float(delay_hours or 0))
        if due_at > now:
            continue
        due.append(
            SweepCandidate(
                recipient_id=recipient_id,
                campaign_id=campaign_id,
                condition_number=condition_number,
                due_at=due_at,
            )
        )
        if len(due) >= limit:
            break
    return due


async def sweep_time_delayed_conditions(
    session: AsyncSession,
    *,
    limit: int = 200,
    now: datetime | None = None,
    triggered_by: str = "scheduler",
    evaluator_factory: Callable[[AsyncSession], ConditionEvaluator] | None = None,
) -> SweepSummary:
    """Run the evaluator for every due time-delayed condition."""

    candidates = await find_due_time_delayed(session, now=now, limit=limit)
    evaluator = (evaluator_factory or ConditionEvaluator)(session)
    summary = SweepSummary(scanned=len(candidates))

    for candidate in candidates:
        try:
            result = await evaluator.evaluate_conditions(
                candidate.recipient_id,
                candidate.campaign_id,
                TIME_DELAYED_EVENT,
                {
                    "condition_number": candidate.condition_number,
                    "source": triggered_by,
                },
            )
        except RewardPipelineError as exc:
            await session.rollback()
            summary.failed += 1
            summary.errors.append(f"{candidate.recipient_id}:{candidate.condition_number}:{exc.message}")
            logger.warning(
                "Time-delayed condition evaluation failed",
                recipient_id=str(candidate.recipient_id),
                campaign_id=str(candidate.campaign_id),
                condition_number=candidate.condition_number,
                error=exc.message,
            )
            continue
        except SQLAlchemyError as exc:
            await session.rollback()
            summary.failed += 1
            summary.errors.append(f"{candidate.recipient_id}:{candidate.condition_number}:database error")
            logger.exception(
                "Time-delayed condition evaluation hit a database error",
                recipient_id=str(candidate.recipient_id),
                campaign_id=str(candidate.campaign_id),
                condition_number=candidate.condition_number,
                error=str(exc),
            )
            continue

        if result.outcome == OUTCOME_TRIGGERED:
            summary.triggered += 1
        elif result.outcome == OUTCOME_PROVISIONING_FAILED:
            summary.failed += 1
            if result.error:
                summary.errors.append(f"{candidate.recipient_id}:{candidate.condition_number}:{result.error}")
        else:
            summary.skipped += 1

    logger.info("Time-delayed condition sweep completed", triggered_by=triggered_by, **summary.as_dict())
    return summary


__all__ = ["SweepCandidate", "SweepSummary", "find_due_time_delayed", "sweep_time_delayed_conditions"]
