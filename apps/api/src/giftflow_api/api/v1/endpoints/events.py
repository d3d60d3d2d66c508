"""Operator endpoint to replay unprocessed pipeline events."""

from __future__ import annotations

from typing import Any, Dict
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.api.dependencies.security import require_internal_api_key
from giftflow_api.api.dependencies.services import get_sms_backend
from giftflow_api.db.session import get_session
from giftflow_api.services.conditions.evaluator import ConditionEvaluator
from giftflow_api.services.delivery import DeliveryDispatcher, SMSBackend
from giftflow_api.services.errors import RewardPipelineError, to_http_exception
from giftflow_api.services.events.ingestion import WebhookIngestionService

router = APIRouter(
    prefix="/events",
    tags=["events"],
    dependencies=[Depends(require_internal_api_key)],
)


@router.post("/{event_id}/replay")
async def replay_event(
    event_id: UUID,
    db: AsyncSession = Depends(get_session),
    sms_backend: SMSBackend = Depends(get_sms_backend),
) -> Dict[str, Any]:
    """Re-run matching and evaluation from the stored payload."""

    evaluator = ConditionEvaluator(db, dispatcher=DeliveryDispatcher(db, sms_backend=sms_backend))
    service = WebhookIngestionService(db, evaluator=evaluator)
    try:
        result = await service.replay(event_id)
    except RewardPipelineError as exc:
        raise to_http_exception(exc) from exc
    return result.as_payload()
