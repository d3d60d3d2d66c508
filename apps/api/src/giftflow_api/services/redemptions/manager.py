"""Recipient-facing redemption lifecycle.

``pending -> provisioned -> viewed -> redeemed`` with ``rejected`` reachable
from ``pending``. Every transition is a conditional UPDATE on the current
status so that two browsers racing on the same code cannot both advance it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.models.campaign import Campaign
from giftflow_api.models.gift_card import GiftCard
from giftflow_api.models.recipient import Recipient
from giftflow_api.models.redemption import (
    DeliveryStatus,
    GiftCardDelivery,
    GiftCardRedemption,
    RedemptionStatus,
)
from giftflow_api.services.errors import ConflictError, NotFoundError, ValidationError
from giftflow_api.services.redemptions.codes import (
    generate_redemption_token,
    is_valid_code_format,
    normalize_code,
)
from giftflow_api.services.rewards.provisioning_service import GiftCardProvisioningService, ProvisionOutcome

INVALID_FORMAT_MESSAGE = "invalid code format"
NOT_FOUND_MESSAGE = "code not found"
NOT_APPROVED_MESSAGE = "not yet approved"
ALREADY_REDEEMED_MESSAGE = "already redeemed"


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    message: str | None = None
    redemption_token: str | None = None
    already_viewed: bool = False
    redemption: GiftCardRedemption | None = None
    card: GiftCard | None = None

    def as_payload(self) -> Dict[str, Any]:
        if not self.valid:
            return {"valid": False, "message": self.message}
        payload: Dict[str, Any] = {
            "valid": True,
            "redemptionToken": self.redemption_token,
            "alreadyViewed": self.already_viewed,
            "status": self.redemption.status.value if self.redemption is not None else None,
        }
        if self.card is not None:
            payload["card"] = {
                "cardCode": self.card.card_code,
                "cardNumber": self.card.card_number,
                "cardValue": float(self.redemption.amount_charged)
                if self.redemption is not None and self.redemption.amount_charged is not None
                else None,
                "expirationDate": self.card.expiration_date.isoformat() if self.card.expiration_date else None,
            }
        return payload


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RedemptionManager:
    def __init__(
        self,
        db_session: AsyncSession,
        *,
        provisioning_service: GiftCardProvisioningService | None = None,
    ) -> None:
        self._db = db_session
        self._provisioning = provisioning_service

    async def validate_code(
        self,
        code: str | None,
        campaign_id: UUID | None,
        *,
        requester_ip: str | None = None,
        user_agent: str | None = None,
    ) -> ValidationResult:
        """Validate a printed code and hand back the redemption reference."""

        if not is_valid_code_format(code):
            return ValidationResult(valid=False, message=INVALID_FORMAT_MESSAGE)
        normalized = normalize_code(code)

        campaign = await self._db.get(Campaign, campaign_id) if campaign_id else None
        recipient = await self._db.scalar(
            select(Recipient).where(Recipient.redemption_code == normalized).limit(1)
        )
        # Tenant mismatch must look exactly like an unknown code.
        if (
            campaign is None
            or recipient is None
            or campaign.audience_id is None
            or campaign.audience_id != recipient.audience_id
        ):
            logger.info("Redemption code lookup failed", campaign_id=str(campaign_id) if campaign_id else None)
            return ValidationResult(valid=False, message=NOT_FOUND_MESSAGE)

        approved = await self._db.scalar(
            select(GiftCardDelivery.id)
            .where(
                GiftCardDelivery.campaign_id == campaign.id,
                GiftCardDelivery.recipient_id == recipient.id,
                GiftCardDelivery.status.in_((DeliveryStatus.SENT, DeliveryStatus.DELIVERED)),
            )
            .limit(1)
        )
        if approved is None:
            return ValidationResult(valid=False, message=NOT_APPROVED_MESSAGE)

        campaign_id, recipient_id = campaign.id, recipient.id

        provisioned = await self._first_with_status(campaign_id, recipient_id, RedemptionStatus.PROVISIONED)
        if provisioned is not None:
            viewed = await self._transition(
                provisioned.id,
                expected=(RedemptionStatus.PROVISIONED,),
                values={
                    "status": RedemptionStatus.VIEWED,
                    "viewed_at": _utcnow(),
                    "requester_ip": requester_ip,
                    "requester_user_agent": user_agent,
                },
            )
            if viewed is not None:
                logger.info("Redemption viewed", redemption_id=str(viewed.id), campaign_id=str(campaign_id))
                return await self._valid(viewed, already_viewed=False)

        viewed = await self._first_with_status(campaign_id, recipient_id, RedemptionStatus.VIEWED)
        if viewed is not None:
            return await self._valid(viewed, already_viewed=True)

        pending = await self._first_with_status(campaign_id, recipient_id, RedemptionStatus.PENDING)
        if pending is not None:
            return await self._valid(pending, already_viewed=False)

        redeemed = await self._first_with_status(campaign_id, recipient_id, RedemptionStatus.REDEEMED)
        if redeemed is not None:
            return ValidationResult(valid=False, message=ALREADY_REDEEMED_MESSAGE)

        redemption = GiftCardRedemption(
            campaign_id=campaign_id,
            recipient_id=recipient_id,
            redemption_code=normalized,
            redemption_token=generate_redemption_token(),
            status=RedemptionStatus.PENDING,
            requester_ip=requester_ip,
            requester_user_agent=user_agent,
        )
        self._db.add(redemption)
        try:
            await self._db.commit()
        except IntegrityError:
            await self._db.rollback()
            winner = await self._first_with_status(campaign_id, recipient_id, RedemptionStatus.PENDING)
            if winner is None:
                raise
            return await self._valid(winner, already_viewed=False)
        logger.info("Pending redemption created", redemption_id=str(redemption.id), campaign_id=str(campaign_id))
        return await self._valid(redemption, already_viewed=False)

    async def approve(self, redemption_id: UUID, *, brand_id: UUID, denomination: Any) -> ProvisionOutcome:
        redemption = await self._load_for_decision(redemption_id)
        service = self._provisioning or GiftCardProvisioningService(self._db)
        return await service.provision_gift_card(
            campaign_id=redemption.campaign_id,
            brand_id=brand_id,
            denomination=denomination,
            recipient_id=redemption.recipient_id,
            redemption_code=redemption.redemption_code,
            condition_number=redemption.condition_number,
            redemption_id=redemption.id,
        )

    async def reject(self, redemption_id: UUID, *, reason: str | None = None) -> GiftCardRedemption:
        await self._load_for_decision(redemption_id)
        rejected = await self._transition(
            redemption_id,
            expected=(RedemptionStatus.PENDING,),
            values={
                "status": RedemptionStatus.REJECTED,
                "rejected_at": _utcnow(),
                "rejection_reason": reason,
            },
        )
        if rejected is None:
            raise ConflictError("Redemption changed state while rejecting")
        logger.info("Redemption rejected", redemption_id=str(redemption_id), reason=reason)
        return rejected

    async def mark_redeemed(self, redemption_token: str) -> GiftCardRedemption:
        redemption = await self._db.scalar(
            select(GiftCardRedemption).where(GiftCardRedemption.redemption_token == redemption_token)
        )
        if redemption is None:
            raise NotFoundError(NOT_FOUND_MESSAGE)
        if redemption.status == RedemptionStatus.REDEEMED:
            raise ConflictError(ALREADY_REDEEMED_MESSAGE, code="already_redeemed")
        if redemption.status not in (RedemptionStatus.PROVISIONED, RedemptionStatus.VIEWED):
            raise ValidationError(f"Redemption in status {redemption.status.value} cannot be redeemed")

        redeemed = await self._transition(
            redemption.id,
            expected=(RedemptionStatus.PROVISIONED, RedemptionStatus.VIEWED),
            values={"status": RedemptionStatus.REDEEMED, "redeemed_at": _utcnow()},
        )
        if redeemed is None:
            raise ConflictError(ALREADY_REDEEMED_MESSAGE, code="already_redeemed")
        logger.info("Redemption redeemed", redemption_id=str(redeemed.id))
        return redeemed

    async def _load_for_decision(self, redemption_id: UUID) -> GiftCardRedemption:
        redemption = await self._db.get(GiftCardRedemption, redemption_id)
        if redemption is None:
            raise NotFoundError("Redemption not found")
        if redemption.status == RedemptionStatus.REDEEMED:
            raise ConflictError(ALREADY_REDEEMED_MESSAGE, code="already_redeemed")
        if redemption.status != RedemptionStatus.PENDING:
            raise ValidationError(f"Redemption in status {redemption.status.value} cannot be approved or rejected")
        return redemption

    async def _first_with_status(
        self, campaign_id: UUID, recipient_id: UUID, status: RedemptionStatus
    ) -> GiftCardRedemption | None:
        stmt = (
            select(GiftCardRedemption)
            .where(
                GiftCardRedemption.campaign_id == campaign_id,
                GiftCardRedemption.recipient_id == recipient_id,
                GiftCardRedemption.status == status,
            )
            .order_by(GiftCardRedemption.created_at.asc(), GiftCardRedemption.id.asc())
            .limit(1)
        )
        return await self._db.scalar(stmt)

    async def _transition(
        self,
        redemption_id: UUID,
        *,
        expected: tuple[RedemptionStatus, ...],
        values: Dict[str, Any],
    ) -> GiftCardRedemption | None:
        result = await self._db.execute(
            update(GiftCardRedemption)
            .where(GiftCardRedemption.id == redemption_id, GiftCardRedemption.status.in_(expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._db.rollback()
            return None
        await self._db.commit()
        return await self._db.get(GiftCardRedemption, redemption_id, populate_existing=True)

    async def _valid(self, redemption: GiftCardRedemption, *, already_viewed: bool) -> ValidationResult:
        card = await self._db.get(GiftCard, redemption.gift_card_id) if redemption.gift_card_id else None
        return ValidationResult(
            valid=True,
            redemption_token=redemption.redemption_token,
            already_viewed=already_viewed,
            redemption=redemption,
            card=card,
        )


__all__ = [
    "ALREADY_REDEEMED_MESSAGE",
    "INVALID_FORMAT_MESSAGE",
    "NOT_APPROVED_MESSAGE",
    "NOT_FOUND_MESSAGE",
    "RedemptionManager",
    "ValidationResult",
]
