"""Inbound webhook endpoints for CRM, telephony, and SMS gateways."""

from __future__ import annotations

from typing import Any, Dict
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.api.dependencies.services import get_sms_backend
from giftflow_api.db.session import get_session
from giftflow_api.services.conditions.evaluator import ConditionEvaluator
from giftflow_api.services.delivery import DeliveryDispatcher, SMSBackend
from giftflow_api.services.errors import RewardPipelineError, ValidationError, to_http_exception
from giftflow_api.services.events.ingestion import WebhookIngestionService, decode_webhook_body
from giftflow_api.services.recipients.opt_in import SmsOptInService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _ingestion_service(db: AsyncSession, sms_backend: SMSBackend) -> WebhookIngestionService:
    dispatcher = DeliveryDispatcher(db, sms_backend=sms_backend)
    return WebhookIngestionService(db, evaluator=ConditionEvaluator(db, dispatcher=dispatcher))


def _field(payload: Any, *names: str) -> str | None:
    if not isinstance(payload, dict):
        return None
    for name in names:
        value = payload.get(name)
        if value not in (None, ""):
            return str(value)
    return None


@router.post("/crm/{integration_id}", status_code=status.HTTP_200_OK)
async def crm_webhook(
    integration_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_session),
    sms_backend: SMSBackend = Depends(get_sms_backend),
) -> Dict[str, Any]:
    """Accept a CRM event for the integration's campaign."""

    body = await request.body()
    service = _ingestion_service(db, sms_backend)
    try:
        result = await service.ingest_crm(
            integration_id,
            body,
            dict(request.headers),
            request.headers.get("content-type"),
        )
    except RewardPipelineError as exc:
        raise to_http_exception(exc) from exc
    return result.as_payload()


@router.post("/telephony/{campaign_id}", status_code=status.HTTP_200_OK)
async def telephony_webhook(
    campaign_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_session),
    sms_backend: SMSBackend = Depends(get_sms_backend),
) -> Dict[str, Any]:
    """Accept a call-disposition event from the call center."""

    body = await request.body()
    service = _ingestion_service(db, sms_backend)
    try:
        result = await service.ingest_call(
            campaign_id,
            body,
            dict(request.headers),
            request.headers.get("content-type"),
        )
    except RewardPipelineError as exc:
        raise to_http_exception(exc) from exc
    return result.as_payload()


@router.post("/sms/inbound", status_code=status.HTTP_200_OK)
async def sms_inbound_webhook(request: Request, db: AsyncSession = Depends(get_session)) -> Dict[str, Any]:
    """Record YES/STOP style consent replies."""

    try:
        payload = decode_webhook_body(await request.body(), request.headers.get("content-type"))
        from_phone = _field(payload, "From", "from", "phone")
        if not from_phone:
            raise ValidationError("Missing sender phone number")
        result = await SmsOptInService(db).record_reply(
            from_phone=from_phone,
            body=_field(payload, "Body", "body", "message"),
            raw_payload=payload if isinstance(payload, dict) else None,
        )
    except RewardPipelineError as exc:
        raise to_http_exception(exc) from exc
    return {
        "event_id": str(result.event_id),
        "matched": result.matched,
        "condition_triggered": False,
        "processed": True,
        "optInStatus": result.status.value if result.status is not None else None,
        "reply": result.reply_message,
    }


@router.post("/sms/status", status_code=status.HTTP_200_OK)
async def sms_status_webhook(
    request: Request,
    db: AsyncSession = Depends(get_session),
    sms_backend: SMSBackend = Depends(get_sms_backend),
) -> Dict[str, Any]:
    """Apply a gateway delivery status callback."""

    try:
        payload = decode_webhook_body(await request.body(), request.headers.get("content-type"))
    except RewardPipelineError as exc:
        raise to_http_exception(exc) from exc
    message_id = _field(payload, "MessageSid", "SmsSid", "message_id")
    message_status = _field(payload, "MessageStatus", "SmsStatus", "status")
    if not message_id or not message_status:
        raise to_http_exception(ValidationError("Missing message id or status"))

    delivery = await DeliveryDispatcher(db, sms_backend=sms_backend).record_status_callback(
        message_id, message_status
    )
    if delivery is None:
        return {"status": "ignored"}
    return {"status": "accepted", "deliveryStatus": delivery.status.value}
