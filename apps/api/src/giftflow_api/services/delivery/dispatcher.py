"""Send provisioned rewards to recipients and track gateway status."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.core.settings import settings
from giftflow_api.models.campaign import Campaign
from giftflow_api.models.gift_card import GiftCard, GiftCardBrand, GiftCardPool, GiftCardStatus
from giftflow_api.models.recipient import Recipient, SmsOptInStatus
from giftflow_api.models.redemption import DeliveryStatus, GiftCardDelivery, GiftCardRedemption
from giftflow_api.observability.rewards import get_reward_store
from giftflow_api.services.delivery.backend import SMSBackend, SMSDeliveryError, build_sms_backend
from giftflow_api.services.delivery.templates import (
    RewardMessageContext,
    build_redemption_link,
    render_reward_sms,
)
from giftflow_api.services.errors import NotFoundError

OPT_IN_REQUIRED = "opt_in_required"
MISSING_PHONE = "missing_phone"

_STATUS_CALLBACK_MAP = {
    "accepted": DeliveryStatus.SENT,
    "queued": DeliveryStatus.SENT,
    "sending": DeliveryStatus.SENT,
    "sent": DeliveryStatus.SENT,
    "delivered": DeliveryStatus.DELIVERED,
    "failed": DeliveryStatus.FAILED,
    "undelivered": DeliveryStatus.FAILED,
}


@dataclass(slots=True)
class DeliveryResult:
    delivery: GiftCardDelivery | None
    status: DeliveryStatus
    error: str | None = None
    already_sent: bool = False

    @property
    def sent(self) -> bool:
        return self.status in (DeliveryStatus.SENT, DeliveryStatus.DELIVERED)


class DeliveryDispatcher:
    """Fire-once SMS delivery of a provisioned redemption.

    A failed send is recorded and left alone; reconciliation happens through
    gateway status callbacks, never through resends from this path.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        sms_backend: SMSBackend | None = None,
        redemption_base_url: str | None = None,
    ) -> None:
        self._db = db_session
        self._sms = sms_backend or build_sms_backend(settings)
        self._redemption_base_url = redemption_base_url or settings.redemption_base_url
        self._store = get_reward_store()

    async def deliver(self, redemption_id: UUID, *, template: str | None = None) -> DeliveryResult:
        redemption = await self._db.get(GiftCardRedemption, redemption_id)
        if redemption is None:
            raise NotFoundError("Redemption not found")

        previous = await self._db.scalar(
            select(GiftCardDelivery)
            .where(
                GiftCardDelivery.redemption_id == redemption.id,
                GiftCardDelivery.status.in_((DeliveryStatus.SENT, DeliveryStatus.DELIVERED)),
            )
            .order_by(GiftCardDelivery.created_at.asc())
            .limit(1)
        )
        if previous is not None:
            return DeliveryResult(delivery=previous, status=previous.status, already_sent=True)

        recipient = await self._db.get(Recipient, redemption.recipient_id)
        campaign = await self._db.get(Campaign, redemption.campaign_id)
        if recipient is None or campaign is None:
            raise NotFoundError("Redemption recipient or campaign not found")

        delivery = GiftCardDelivery(
            redemption_id=redemption.id,
            recipient_id=recipient.id,
            campaign_id=campaign.id,
            delivery_method="sms",
            destination=recipient.phone,
            status=DeliveryStatus.PENDING,
        )

        if recipient.sms_opt_in_status != SmsOptInStatus.OPTED_IN:
            return await self._record_failure(delivery, OPT_IN_REQUIRED)
        if not recipient.phone:
            return await self._record_failure(delivery, MISSING_PHONE)

        card = await self._db.get(GiftCard, redemption.gift_card_id) if redemption.gift_card_id else None
        brand_name = await self._brand_name(card)
        context = RewardMessageContext(
            first_name=recipient.first_name,
            card_value=redemption.amount_charged,
            brand_name=brand_name,
            card_code=card.card_code if card is not None else None,
            redemption_code=redemption.redemption_code or recipient.redemption_code,
            redemption_link=build_redemption_link(self._redemption_base_url, redemption.redemption_token),
        )
        delivery.message_body = render_reward_sms(template or campaign.sms_template, context)
        delivery.provider = self._sms.provider

        try:
            result = await self._sms.send_sms(recipient.phone, delivery.message_body)
        except SMSDeliveryError as exc:
            return await self._record_failure(delivery, str(exc))

        now = datetime.now(timezone.utc)
        delivery.status = DeliveryStatus.SENT
        delivery.provider = result.provider
        delivery.provider_message_id = result.message_id
        delivery.sent_at = now
        delivery.metadata_json = {"gateway_status": result.status}
        self._db.add(delivery)
        if card is not None:
            await self._db.execute(
                update(GiftCard)
                .where(GiftCard.id == card.id, GiftCard.status == GiftCardStatus.CLAIMED)
                .values(status=GiftCardStatus.DELIVERED, delivered_at=now)
                .execution_options(synchronize_session=False)
            )
        await self._db.commit()

        self._store.record_delivery(DeliveryStatus.SENT.value)
        logger.info(
            "Reward SMS sent",
            redemption_id=str(redemption.id),
            delivery_id=str(delivery.id),
            provider=result.provider,
            provider_message_id=result.message_id,
        )
        return DeliveryResult(delivery=delivery, status=DeliveryStatus.SENT)

    async def record_status_callback(self, provider_message_id: str, status: str) -> GiftCardDelivery | None:
        """Apply a gateway status callback to the matching delivery."""

        mapped = _STATUS_CALLBACK_MAP.get((status or "").strip().lower())
        if mapped is None:
            logger.info("Ignoring unknown SMS status", provider_message_id=provider_message_id, status=status)
            return None

        delivery = await self._db.scalar(
            select(GiftCardDelivery).where(GiftCardDelivery.provider_message_id == provider_message_id).limit(1)
        )
        if delivery is None:
            logger.warning("SMS status callback for unknown message", provider_message_id=provider_message_id)
            return None
        if delivery.status == DeliveryStatus.DELIVERED:
            return delivery

        delivery.status = mapped
        if mapped == DeliveryStatus.DELIVERED:
            delivery.delivered_at = datetime.now(timezone.utc)
        elif mapped == DeliveryStatus.FAILED:
            delivery.error_message = f"gateway status: {status}"
        await self._db.commit()

        self._store.record_delivery(f"callback:{mapped.value}")
        logger.info(
            "SMS delivery status updated",
            delivery_id=str(delivery.id),
            provider_message_id=provider_message_id,
            status=mapped.value,
        )
        return delivery

    async def _record_failure(self, delivery: GiftCardDelivery, error: str) -> DeliveryResult:
        delivery.status = DeliveryStatus.FAILED
        delivery.error_message = error
        self._db.add(delivery)
        await self._db.commit()
        self._store.record_delivery(DeliveryStatus.FAILED.value)
        logger.warning(
            "Reward SMS not sent",
            redemption_id=str(delivery.redemption_id),
            recipient_id=str(delivery.recipient_id),
            error=error,
        )
        return DeliveryResult(delivery=delivery, status=DeliveryStatus.FAILED, error=error)

    async def _brand_name(self, card: GiftCard | None) -> str | None:
        if card is None:
            return None
        pool = await self._db.get(GiftCardPool, card.pool_id)
        if pool is None:
            return None
        brand = await self._db.get(GiftCardBrand, pool.brand_id)
        return brand.name if brand is not None else None


__all__ = ["DeliveryDispatcher", "DeliveryResult", "MISSING_PHONE", "OPT_IN_REQUIRED"]
