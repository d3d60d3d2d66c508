"""Redemption endpoints: public code validation plus internal approval flow."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.api.dependencies.security import require_internal_api_key
from giftflow_api.api.dependencies.services import get_sms_backend
from giftflow_api.db.session import get_session
from giftflow_api.models.redemption import GiftCardRedemption
from giftflow_api.services.delivery import DeliveryDispatcher, SMSBackend
from giftflow_api.services.errors import RewardPipelineError, to_http_exception
from giftflow_api.services.redemptions.manager import RedemptionManager

router = APIRouter(prefix="/redemptions", tags=["redemptions"])


class ValidateCodeRequest(BaseModel):
    code: str
    campaign_id: UUID = Field(alias="campaignId")

    model_config = {"populate_by_name": True}


class ApproveRedemptionRequest(BaseModel):
    brand_id: UUID = Field(alias="brandId")
    denomination: Decimal = Field(gt=0)
    send_sms: bool = Field(default=True, alias="sendSms")

    model_config = {"populate_by_name": True}


class RejectRedemptionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class RedeemRequest(BaseModel):
    redemption_token: str = Field(alias="redemptionToken", min_length=1)

    model_config = {"populate_by_name": True}


class RedemptionResponse(BaseModel):
    id: str
    campaign_id: str = Field(alias="campaignId")
    recipient_id: str = Field(alias="recipientId")
    status: str
    redemption_token: Optional[str] = Field(default=None, alias="redemptionToken")
    condition_number: Optional[int] = Field(default=None, alias="conditionNumber")
    rejection_reason: Optional[str] = Field(default=None, alias="rejectionReason")
    redeemed_at: Optional[str] = Field(default=None, alias="redeemedAt")

    model_config = {"populate_by_name": True}


def _serialize(redemption: GiftCardRedemption) -> RedemptionResponse:
    return RedemptionResponse(
        id=str(redemption.id),
        campaign_id=str(redemption.campaign_id),
        recipient_id=str(redemption.recipient_id),
        status=redemption.status.value,
        redemption_token=redemption.redemption_token,
        condition_number=redemption.condition_number,
        rejection_reason=redemption.rejection_reason,
        redeemed_at=redemption.redeemed_at.isoformat() if redemption.redeemed_at else None,
    )


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


@router.post("/validate")
async def validate_code(
    payload: ValidateCodeRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """Public entrypoint behind the redemption page."""

    result = await RedemptionManager(db).validate_code(
        payload.code,
        payload.campaign_id,
        requester_ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return result.as_payload()


@router.post("/{redemption_id}/approve", dependencies=[Depends(require_internal_api_key)])
async def approve_redemption(
    redemption_id: UUID,
    payload: ApproveRedemptionRequest,
    db: AsyncSession = Depends(get_session),
    sms_backend: SMSBackend = Depends(get_sms_backend),
) -> Dict[str, Any]:
    try:
        outcome = await RedemptionManager(db).approve(
            redemption_id,
            brand_id=payload.brand_id,
            denomination=payload.denomination,
        )
    except RewardPipelineError as exc:
        raise to_http_exception(exc) from exc

    response = outcome.as_payload()
    if outcome.success and payload.send_sms and outcome.redemption is not None:
        dispatcher = DeliveryDispatcher(db, sms_backend=sms_backend)
        try:
            delivery = await dispatcher.deliver(outcome.redemption.id)
        except RewardPipelineError as exc:
            logger.warning("Approved redemption could not be delivered", redemption_id=str(redemption_id), error=exc.message)
            response["deliveryStatus"] = None
        else:
            response["deliveryStatus"] = delivery.status.value
    return response


@router.post(
    "/{redemption_id}/reject",
    response_model=RedemptionResponse,
    response_model_by_alias=True,
    dependencies=[Depends(require_internal_api_key)],
)
async def reject_redemption(
    redemption_id: UUID,
    payload: RejectRedemptionRequest,
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    try:
        redemption = await RedemptionManager(db).reject(redemption_id, reason=payload.reason)
    except RewardPipelineError as exc:
        raise to_http_exception(exc) from exc
    return _serialize(redemption)


@router.post(
    "/redeem",
    response_model=RedemptionResponse,
    response_model_by_alias=True,
    dependencies=[Depends(require_internal_api_key)],
)
async def redeem(
    payload: RedeemRequest,
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    """Lock the redemption once the card has been used."""

    try:
        redemption = await RedemptionManager(db).mark_redeemed(payload.redemption_token)
    except RewardPipelineError as exc:
        raise to_http_exception(exc) from exc
    return _serialize(redemption)
