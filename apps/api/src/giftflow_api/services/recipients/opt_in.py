"""SMS consent: outbound opt-in requests and inbound YES/STOP replies."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.models.campaign import Campaign, Client
from giftflow_api.models.pipeline_event import EventSource, PipelineEvent
from giftflow_api.models.recipient import Recipient, SmsOptInStatus
from giftflow_api.observability.rewards import get_reward_store
from giftflow_api.services.delivery.backend import SMSBackend, SMSDeliveryError
from giftflow_api.services.delivery.templates import render_template
from giftflow_api.services.errors import ForbiddenError, InternalError, NotFoundError, ValidationError
from giftflow_api.services.recipients.matcher import normalize_phone

OPT_IN_KEYWORDS = frozenset({"YES", "Y", "YEA", "YEAH", "YEP", "YUP", "OK", "OKAY", "SURE", "ACCEPT"})
OPT_OUT_KEYWORDS = frozenset(
    {"STOP", "UNSUBSCRIBE", "CANCEL", "END", "QUIT", "NO", "OPTOUT", "OPT OUT", "STOP ALL"}
)

REPLY_MESSAGES = {
    SmsOptInStatus.OPTED_IN: "Thanks! You're confirmed to receive your reward by text. Reply STOP to opt out.",
    SmsOptInStatus.OPTED_OUT: "You have been unsubscribed. No further messages will be sent.",
    SmsOptInStatus.INVALID_RESPONSE: "We didn't understand your response. Please reply YES to opt in or STOP to opt out.",
}

DEFAULT_OPT_IN_MESSAGE = (
    "This is {{client_name}}. Reply YES to receive your gift card and marketing messages for 30 days. "
    "Reply STOP to opt out."
)
OPT_IN_RESEND_COOLDOWN = timedelta(minutes=5)

_AWAITING_CONSENT = (SmsOptInStatus.PENDING, SmsOptInStatus.INVALID_RESPONSE)


def format_phone_e164(phone: str | None) -> str | None:
    digits = normalize_phone(phone)
    if digits is None or len(digits) != 10:
        return None
    return f"+1{digits}"


def classify_reply(body: str | None) -> SmsOptInStatus:
    text = " ".join((body or "").upper().split())
    if text in OPT_IN_KEYWORDS:
        return SmsOptInStatus.OPTED_IN
    if text in OPT_OUT_KEYWORDS:
        return SmsOptInStatus.OPTED_OUT
    return SmsOptInStatus.INVALID_RESPONSE


@dataclass(slots=True)
class OptInReplyResult:
    matched: bool
    status: SmsOptInStatus | None
    changed: bool
    reply_message: str | None
    recipient_id: Any = None
    event_id: Any = None


@dataclass(slots=True)
class OptInRequestResult:
    sent: bool
    status: SmsOptInStatus
    reason: str | None = None
    message_id: str | None = None
    provider: str | None = None
    sent_at: datetime | None = None

    def as_payload(self) -> dict[str, Any]:
        return {
            "sent": self.sent,
            "optInStatus": self.status.value,
            "reason": self.reason,
            "messageId": self.message_id,
            "provider": self.provider,
            "sentAt": self.sent_at.isoformat() if self.sent_at is not None else None,
        }


class SmsOptInService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def record_reply(
        self,
        *,
        from_phone: str | None,
        body: str | None,
        raw_payload: Mapping[str, Any] | None = None,
    ) -> OptInReplyResult:
        """Apply a YES/STOP style reply to the sender's consent status."""

        requested = classify_reply(body)
        recipient = await self._find_recipient(from_phone, requested)
        now = datetime.now(timezone.utc)

        changed = False
        if recipient is not None:
            current = recipient.sms_opt_in_status
            if requested == SmsOptInStatus.OPTED_OUT and current != SmsOptInStatus.OPTED_OUT:
                recipient.sms_opt_in_status = SmsOptInStatus.OPTED_OUT
                recipient.opted_out_at = now
                changed = True
            elif requested != SmsOptInStatus.OPTED_OUT and current in _AWAITING_CONSENT and current != requested:
                recipient.sms_opt_in_status = requested
                if requested == SmsOptInStatus.OPTED_IN:
                    recipient.opted_in_at = now
                changed = True

        event = PipelineEvent(
            source=EventSource.SMS,
            provider="sms",
            event_type=f"sms.{requested.value}",
            raw_event_type="sms.received",
            recipient_id=recipient.id if recipient is not None else None,
            raw_payload=dict(raw_payload or {"from": from_phone, "body": body}),
            matched=recipient is not None,
            condition_triggered=False,
            processed=True,
            processed_at=now,
        )
        self._db.add(event)
        await self._db.commit()

        get_reward_store().record_event("sms", matched=recipient is not None, processed=True)
        logger.info(
            "SMS consent reply recorded",
            event_id=str(event.id),
            recipient_id=str(recipient.id) if recipient is not None else None,
            status=requested.value,
            changed=changed,
        )
        return OptInReplyResult(
            matched=recipient is not None,
            status=recipient.sms_opt_in_status if recipient is not None else None,
            changed=changed,
            reply_message=REPLY_MESSAGES[requested] if recipient is not None and changed else None,
            recipient_id=recipient.id if recipient is not None else None,
            event_id=event.id,
        )

    async def request_opt_in(
        self,
        *,
        recipient_id: UUID,
        campaign_id: UUID,
        sms_backend: SMSBackend,
        phone: str | None = None,
        now: datetime | None = None,
    ) -> OptInRequestResult:
        """Text the recipient a YES/STOP consent request and mark consent pending."""

        recipient = await self._db.get(Recipient, recipient_id)
        if recipient is None:
            raise NotFoundError("Recipient not found")
        campaign = await self._db.get(Campaign, campaign_id)
        if campaign is None:
            raise NotFoundError("Campaign not found")
        if campaign.audience_id is None or campaign.audience_id != recipient.audience_id:
            raise ForbiddenError("Recipient does not belong to this campaign")

        destination = format_phone_e164(phone or recipient.phone)
        if destination is None:
            raise ValidationError("Invalid phone number", code="invalid_phone")

        now = now or datetime.now(timezone.utc)
        current = recipient.sms_opt_in_status
        if current in (SmsOptInStatus.OPTED_IN, SmsOptInStatus.OPTED_OUT):
            return OptInRequestResult(sent=False, status=current, reason=current.value)
        sent_at = recipient.sms_opt_in_sent_at
        if sent_at is not None and sent_at.tzinfo is None:
            sent_at = sent_at.replace(tzinfo=timezone.utc)
        if current == SmsOptInStatus.PENDING and sent_at is not None and now - sent_at < OPT_IN_RESEND_COOLDOWN:
            return OptInRequestResult(sent=False, status=current, reason="recently_sent", sent_at=sent_at)

        client = await self._db.get(Client, campaign.client_id)
        client_name = client.name if client is not None else "us"
        body = render_template(
            campaign.sms_opt_in_message or DEFAULT_OPT_IN_MESSAGE,
            {"client_name": client_name, "company": client_name},
        )
        try:
            sent = await sms_backend.send_sms(destination, body)
        except SMSDeliveryError as exc:
            logger.warning(
                "Opt-in request SMS failed",
                recipient_id=str(recipient_id),
                provider=exc.provider,
                error=str(exc),
            )
            raise InternalError(f"Opt-in SMS could not be sent: {exc}", code="sms_send_failed") from exc

        recipient.sms_opt_in_status = SmsOptInStatus.PENDING
        recipient.sms_opt_in_sent_at = now
        recipient.phone = destination
        event = PipelineEvent(
            source=EventSource.SMS,
            provider=sent.provider,
            event_type="sms.opt_in_requested",
            raw_event_type="sms.sent",
            campaign_id=campaign_id,
            recipient_id=recipient_id,
            raw_payload={"to": destination, "body": body, "message_id": sent.message_id},
            matched=True,
            condition_triggered=False,
            processed=True,
            processed_at=now,
        )
        self._db.add(event)
        await self._db.commit()

        logger.info(
            "Opt-in request SMS sent",
            recipient_id=str(recipient_id),
            campaign_id=str(campaign_id),
            provider=sent.provider,
            message_id=sent.message_id,
        )
        return OptInRequestResult(
            sent=True,
            status=SmsOptInStatus.PENDING,
            message_id=sent.message_id,
            provider=sent.provider,
            sent_at=now,
        )

    async def _find_recipient(self, from_phone: str | None, requested: SmsOptInStatus) -> Recipient | None:
        phone = normalize_phone(from_phone)
        if not phone:
            return None
        stmt = select(Recipient).where(Recipient.phone.like(f"%{phone}"))
        if requested != SmsOptInStatus.OPTED_OUT:
            stmt = stmt.where(Recipient.sms_opt_in_status.in_(_AWAITING_CONSENT))
        stmt = stmt.order_by(Recipient.created_at.asc(), Recipient.id.asc()).limit(1)
        return (await self._db.execute(stmt)).scalar_one_or_none()


__all__ = [
    "DEFAULT_OPT_IN_MESSAGE",
    "OPT_IN_KEYWORDS",
    "OPT_IN_RESEND_COOLDOWN",
    "OPT_OUT_KEYWORDS",
    "OptInReplyResult",
    "OptInRequestResult",
    "SmsOptInService",
    "classify_reply",
    "format_phone_e164",
]
