"""Internal condition evaluation endpoint."""

from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.api.dependencies.security import require_internal_api_key
from giftflow_api.api.dependencies.services import get_sms_backend
from giftflow_api.db.session import get_session
from giftflow_api.services.conditions.evaluator import ConditionEvaluator
from giftflow_api.services.delivery import DeliveryDispatcher, SMSBackend
from giftflow_api.services.errors import RewardPipelineError, to_http_exception

router = APIRouter(
    prefix="/conditions",
    tags=["conditions"],
    dependencies=[Depends(require_internal_api_key)],
)


class EvaluateConditionsRequest(BaseModel):
    recipient_id: UUID = Field(alias="recipientId")
    campaign_id: UUID = Field(alias="campaignId")
    event_type: str = Field(alias="eventType", min_length=1)
    metadata: Optional[Dict[str, Any]] = None

    model_config = {"populate_by_name": True}


class EvaluateConditionsResponse(BaseModel):
    outcome: str
    triggered: bool
    condition_number: Optional[int] = Field(default=None, alias="conditionNumber")
    redemption_id: Optional[str] = Field(default=None, alias="redemptionId")
    delivery_status: Optional[str] = Field(default=None, alias="deliveryStatus")
    error: Optional[str] = None
    error_code: Optional[str] = Field(default=None, alias="errorCode")

    model_config = {"populate_by_name": True}


@router.post("/evaluate", response_model=EvaluateConditionsResponse, response_model_by_alias=True)
async def evaluate_conditions(
    payload: EvaluateConditionsRequest,
    db: AsyncSession = Depends(get_session),
    sms_backend: SMSBackend = Depends(get_sms_backend),
) -> EvaluateConditionsResponse:
    """Advance the recipient's condition chain for one event."""

    evaluator = ConditionEvaluator(db, dispatcher=DeliveryDispatcher(db, sms_backend=sms_backend))
    try:
        result = await evaluator.evaluate_conditions(
            payload.recipient_id,
            payload.campaign_id,
            payload.event_type,
            payload.metadata,
        )
    except RewardPipelineError as exc:
        raise to_http_exception(exc) from exc
    return EvaluateConditionsResponse(triggered=result.triggered, **result.as_payload())
