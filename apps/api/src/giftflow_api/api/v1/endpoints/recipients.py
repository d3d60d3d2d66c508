"""Internal recipient consent endpoint."""

from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.api.dependencies.security import require_internal_api_key
from giftflow_api.api.dependencies.services import get_sms_backend
from giftflow_api.db.session import get_session
from giftflow_api.services.delivery import SMSBackend
from giftflow_api.services.errors import RewardPipelineError, to_http_exception
from giftflow_api.services.recipients.opt_in import SmsOptInService

router = APIRouter(
    prefix="/recipients",
    tags=["recipients"],
    dependencies=[Depends(require_internal_api_key)],
)


class OptInRequest(BaseModel):
    campaign_id: UUID = Field(alias="campaignId")
    phone: Optional[str] = None

    model_config = {"populate_by_name": True}


@router.post("/{recipient_id}/opt-in-request")
async def request_sms_opt_in(
    recipient_id: UUID,
    payload: OptInRequest,
    db: AsyncSession = Depends(get_session),
    sms_backend: SMSBackend = Depends(get_sms_backend),
) -> Dict[str, Any]:
    """Send the consent request SMS, unless consent is settled or was just asked for."""

    try:
        result = await SmsOptInService(db).request_opt_in(
            recipient_id=recipient_id,
            campaign_id=payload.campaign_id,
            phone=payload.phone,
            sms_backend=sms_backend,
        )
    except RewardPipelineError as exc:
        raise to_http_exception(exc) from exc
    return result.as_payload()
