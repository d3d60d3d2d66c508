"""Internal gift card provisioning endpoint."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.api.dependencies.security import require_internal_api_key
from giftflow_api.db.session import get_session
from giftflow_api.services.errors import RewardPipelineError, to_http_exception
from giftflow_api.services.rewards.provisioning_service import GiftCardProvisioningService

router = APIRouter(
    prefix="/gift-cards",
    tags=["gift-cards"],
    dependencies=[Depends(require_internal_api_key)],
)


class ProvisionGiftCardRequest(BaseModel):
    campaign_id: UUID = Field(alias="campaignId")
    brand_id: UUID = Field(alias="brandId")
    denomination: Decimal = Field(gt=0)
    recipient_id: UUID = Field(alias="recipientId")
    redemption_code: Optional[str] = Field(default=None, alias="redemptionCode")
    delivery_method: str = Field(default="sms", alias="deliveryMethod")
    condition_number: Optional[int] = Field(default=None, alias="conditionNumber", ge=1)

    model_config = {"populate_by_name": True}


@router.post("/provision")
async def provision_gift_card(
    payload: ProvisionGiftCardRequest,
    db: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """Debit credit and claim a card for the recipient.

    Credit and inventory failures come back as ``{"success": false}``;
    only validation, tenant and conflict errors map to HTTP errors.
    """

    service = GiftCardProvisioningService(db)
    try:
        outcome = await service.provision_gift_card(
            campaign_id=payload.campaign_id,
            brand_id=payload.brand_id,
            denomination=payload.denomination,
            recipient_id=payload.recipient_id,
            redemption_code=payload.redemption_code,
            delivery_method=payload.delivery_method,
            condition_number=payload.condition_number,
        )
    except RewardPipelineError as exc:
        raise to_http_exception(exc) from exc
    return outcome.as_payload()
