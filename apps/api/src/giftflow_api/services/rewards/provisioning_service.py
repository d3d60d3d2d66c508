"""Orchestrates credit, card claim, and redemption bookkeeping for one reward."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.core.settings import settings
from giftflow_api.models.campaign import Campaign
from giftflow_api.models.gift_card import GiftCard, GiftCardBrand
from giftflow_api.models.recipient import Recipient
from giftflow_api.models.redemption import GiftCardRedemption, RedemptionStatus, RewardSource
from giftflow_api.services.credits.ledger import CreditLedgerService
from giftflow_api.services.errors import (
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    OverdraftError,
    ProvisioningExhaustedError,
    RewardPipelineError,
    ValidationError,
)
from giftflow_api.services.redemptions.codes import generate_redemption_token
from giftflow_api.services.rewards.provisioner import (
    UNKNOWN_FAILURE_CODE,
    ProvisionedCard,
    ProvisioningFailure,
    RewardProvisioner,
)

_SETTLED_STATUSES = {RedemptionStatus.PROVISIONED, RedemptionStatus.VIEWED, RedemptionStatus.REDEEMED}


@dataclass(slots=True)
class ProvisionOutcome:
    success: bool
    redemption: GiftCardRedemption | None = None
    card: GiftCard | None = None
    card_value: Decimal | None = None
    source: RewardSource | None = None
    credit_remaining: Decimal | None = None
    error: str | None = None
    error_code: str | None = None
    already_provisioned: bool = False

    def as_payload(self) -> Dict[str, Any]:
        if not self.success:
            return {"success": False, "error": self.error, "errorCode": self.error_code}
        card = self.card
        return {
            "success": True,
            "alreadyProvisioned": self.already_provisioned,
            "redemption": {
                "id": str(self.redemption.id),
                "status": self.redemption.status.value,
                "redemptionToken": self.redemption.redemption_token,
            }
            if self.redemption is not None
            else None,
            "card": {
                "id": str(card.id),
                "cardCode": card.card_code,
                "cardNumber": card.card_number,
                "cardValue": float(self.card_value) if self.card_value is not None else None,
            }
            if card is not None
            else None,
            "source": self.source.value if self.source else None,
            "creditRemaining": float(self.credit_remaining) if self.credit_remaining is not None else None,
        }


def _coerce_denomination(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValidationError("Invalid denomination", code="GC-012") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Denomination must be positive", code="GC-012")
    return amount.quantize(Decimal("0.01"))


class GiftCardProvisioningService:
    """Reserve a redemption, debit credit, then claim a card.

    Credit is always debited before a card is claimed; a card that cannot be
    provisioned after the debit is compensated with a refund. A redemption is
    leased for the duration of one attempt so that concurrent callers cannot
    both debit for it; leases older than ``provisioning_lease_seconds`` are
    considered abandoned.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        provisioner: RewardProvisioner | None = None,
        ledger: CreditLedgerService | None = None,
    ) -> None:
        self._db = db_session
        self._provisioner = provisioner or RewardProvisioner(db_session)
        self._ledger = ledger or CreditLedgerService(db_session)

    async def provision_gift_card(
        self,
        *,
        campaign_id: UUID | None,
        brand_id: UUID | None,
        denomination: Any,
        recipient_id: UUID | None,
        redemption_code: str | None = None,
        delivery_method: str = "sms",
        condition_number: int | None = None,
        redemption_id: UUID | None = None,
    ) -> ProvisionOutcome:
        if campaign_id is None or brand_id is None or recipient_id is None or denomination is None:
            raise ValidationError("Missing required parameters", code="GC-012")
        amount = _coerce_denomination(denomination)

        campaign = await self._db.get(Campaign, campaign_id)
        if campaign is None:
            raise NotFoundError("Campaign not found")
        recipient = await self._db.get(Recipient, recipient_id)
        if recipient is None:
            raise NotFoundError("Recipient not found")
        if await self._db.get(GiftCardBrand, brand_id) is None:
            raise NotFoundError("Gift card brand not found", code="GC-002")
        if campaign.audience_id is None or campaign.audience_id != recipient.audience_id:
            raise ForbiddenError("Recipient does not belong to this campaign")

        code = redemption_code or recipient.redemption_code
        redemption = await self._reserve_redemption(
            campaign_id=campaign_id,
            recipient_id=recipient_id,
            condition_number=condition_number,
            redemption_id=redemption_id,
            redemption_code=code,
            delivery_method=delivery_method,
        )
        if redemption.status in _SETTLED_STATUSES:
            return await self._settled_outcome(redemption)
        reserved_id = redemption.id

        lease = await self._acquire_lease(reserved_id)
        if lease is None:
            current = await self._db.get(GiftCardRedemption, reserved_id, populate_existing=True)
            if current is not None and current.status in _SETTLED_STATUSES:
                return await self._settled_outcome(current)
            raise ConflictError(
                "Reward provisioning already in progress for this redemption",
                code="provisioning_in_progress",
            )

        try:
            check = await self._ledger.check_sufficient(campaign_id, amount)
            if not check.sufficient:
                raise OverdraftError(
                    f"Insufficient credits. Required: ${amount}, Available: ${check.available}",
                    account_id=check.account_id,
                    requested=amount,
                    available=check.available,
                )
            movement = await self._ledger.debit(
                check.account_id,
                amount,
                metadata={
                    "redemption_id": reserved_id,
                    "campaign_id": campaign_id,
                    "recipient_id": recipient_id,
                    "condition_number": condition_number,
                    "source": "gift_card_provisioning",
                },
            )
        except OverdraftError as exc:
            await self._release_lease(reserved_id, lease)
            logger.warning(
                "Gift card provisioning blocked by credit",
                campaign_id=str(campaign_id),
                recipient_id=str(recipient_id),
                redemption_id=str(reserved_id),
                requested=str(amount),
            )
            return ProvisionOutcome(success=False, error=exc.message, error_code=exc.code)
        except (RewardPipelineError, SQLAlchemyError):
            await self._db.rollback()
            await self._release_lease(reserved_id, lease)
            raise

        try:
            result = await self._claim_card(
                brand_id,
                amount,
                recipient_id=recipient_id,
                campaign_id=campaign_id,
                redemption_id=reserved_id,
            )
        except (ProvisioningExhaustedError, InternalError) as exc:
            await self._compensate(movement.account_id, amount, reserved_id, exc.code)
            await self._release_lease(reserved_id, lease)
            return ProvisionOutcome(success=False, error=exc.message, error_code=exc.code)

        now = datetime.now(timezone.utc)
        finalized = await self._db.execute(
            update(GiftCardRedemption)
            .where(
                GiftCardRedemption.id == reserved_id,
                GiftCardRedemption.status == RedemptionStatus.PENDING,
                GiftCardRedemption.provisioning_lease == lease,
            )
            .values(
                gift_card_id=result.card.id,
                amount_charged=amount,
                account_charged_id=movement.account_id,
                source=result.source,
                status=RedemptionStatus.PROVISIONED,
                provisioned_at=now,
                provisioning_lease=None,
                provisioning_started_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()
        if finalized.rowcount != 1:
            # Lease expired and another caller took the redemption over.
            logger.error(
                "Provisioned card lost its redemption lease",
                redemption_id=str(reserved_id),
                card_id=str(result.card.id),
                source=result.source.value,
            )
            await self._compensate(movement.account_id, amount, reserved_id, "lease_lost")
            return ProvisionOutcome(
                success=False,
                error="Redemption changed state while provisioning",
                error_code="provisioning_conflict",
            )
        redemption = await self._db.get(GiftCardRedemption, reserved_id, populate_existing=True)

        logger.info(
            "Gift card redemption provisioned",
            redemption_id=str(reserved_id),
            campaign_id=str(campaign_id),
            recipient_id=str(recipient_id),
            card_id=str(result.card.id),
            source=result.source.value,
            amount=str(amount),
            credit_remaining=str(movement.balance_after),
        )
        return ProvisionOutcome(
            success=True,
            redemption=redemption,
            card=result.card,
            card_value=amount,
            source=result.source,
            credit_remaining=movement.balance_after,
        )

    async def _reserve_redemption(
        self,
        *,
        campaign_id: UUID,
        recipient_id: UUID,
        condition_number: int | None,
        redemption_id: UUID | None,
        redemption_code: str | None,
        delivery_method: str,
    ) -> GiftCardRedemption:
        if redemption_id is not None:
            redemption = await self._db.get(GiftCardRedemption, redemption_id)
            if redemption is None or redemption.campaign_id != campaign_id or redemption.recipient_id != recipient_id:
                raise NotFoundError("Redemption not found")
            self._ensure_reservable(redemption)
            return redemption

        existing = await self._find_existing(campaign_id, recipient_id, condition_number)
        if existing is not None:
            self._ensure_reservable(existing)
            return existing

        redemption = GiftCardRedemption(
            campaign_id=campaign_id,
            recipient_id=recipient_id,
            condition_number=condition_number,
            redemption_code=redemption_code,
            redemption_token=generate_redemption_token(),
            status=RedemptionStatus.PENDING,
            metadata_json={"delivery_method": delivery_method},
        )
        self._db.add(redemption)
        try:
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            existing = await self._find_existing(campaign_id, recipient_id, condition_number)
            if existing is None:
                raise ConflictError("Reward provisioning already in progress for this recipient") from exc
            self._ensure_reservable(existing)
            return existing
        return redemption

    async def _find_existing(
        self,
        campaign_id: UUID,
        recipient_id: UUID,
        condition_number: int | None,
    ) -> GiftCardRedemption | None:
        stmt = select(GiftCardRedemption).where(
            GiftCardRedemption.campaign_id == campaign_id,
            GiftCardRedemption.recipient_id == recipient_id,
        )
        if condition_number is None:
            stmt = stmt.where(
                GiftCardRedemption.condition_number.is_(None),
                GiftCardRedemption.status == RedemptionStatus.PENDING,
            )
        else:
            stmt = stmt.where(GiftCardRedemption.condition_number == condition_number)
        stmt = stmt.order_by(GiftCardRedemption.created_at.asc()).limit(1)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _ensure_reservable(redemption: GiftCardRedemption) -> None:
        if redemption.status == RedemptionStatus.REJECTED:
            raise ConflictError("Redemption was rejected", code="redemption_rejected")

    async def _settled_outcome(self, redemption: GiftCardRedemption) -> ProvisionOutcome:
        card = await self._db.get(GiftCard, redemption.gift_card_id) if redemption.gift_card_id else None
        logger.info(
            "Gift card already provisioned for redemption",
            redemption_id=str(redemption.id),
            status=redemption.status.value,
        )
        return ProvisionOutcome(
            success=True,
            redemption=redemption,
            card=card,
            card_value=redemption.amount_charged,
            source=redemption.source,
            already_provisioned=True,
        )

    async def _claim_card(
        self,
        brand_id: UUID,
        amount: Decimal,
        *,
        recipient_id: UUID,
        campaign_id: UUID,
        redemption_id: UUID,
    ) -> ProvisionedCard:
        try:
            result = await self._provisioner.provision(
                brand_id,
                amount,
                recipient_id=recipient_id,
                campaign_id=campaign_id,
                reference=str(redemption_id),
            )
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception(
                "Card provisioning raised a database error",
                redemption_id=str(redemption_id),
                brand_id=str(brand_id),
                error=str(exc),
            )
            raise InternalError("Card provisioning could not be completed", code=UNKNOWN_FAILURE_CODE) from exc
        if isinstance(result, ProvisioningFailure):
            raise ProvisioningExhaustedError(result.error, code=result.code)
        return result

    async def _acquire_lease(self, redemption_id: UUID) -> str | None:
        """Mark a pending redemption in flight; ``None`` when another caller holds it."""

        now = datetime.now(timezone.utc)
        stale_before = now - timedelta(seconds=settings.provisioning_lease_seconds)
        lease = uuid4().hex
        claimed = await self._db.execute(
            update(GiftCardRedemption)
            .where(
                GiftCardRedemption.id == redemption_id,
                GiftCardRedemption.status == RedemptionStatus.PENDING,
                GiftCardRedemption.gift_card_id.is_(None),
                or_(
                    GiftCardRedemption.provisioning_lease.is_(None),
                    GiftCardRedemption.provisioning_started_at < stale_before,
                ),
            )
            .values(provisioning_lease=lease, provisioning_started_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()
        return lease if claimed.rowcount == 1 else None

    async def _release_lease(self, redemption_id: UUID, lease: str) -> None:
        try:
            await self._db.execute(
                update(GiftCardRedemption)
                .where(GiftCardRedemption.id == redemption_id, GiftCardRedemption.provisioning_lease == lease)
                .values(provisioning_lease=None, provisioning_started_at=None)
                .execution_options(synchronize_session=False)
            )
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Redemption lease could not be released", redemption_id=str(redemption_id), error=str(exc))

    async def _compensate(self, account_id: UUID, amount: Decimal, redemption_id: UUID, error_code: str) -> None:
        try:
            await self._ledger.refund(
                account_id,
                amount,
                metadata={
                    "redemption_id": redemption_id,
                    "reason": "provisioning_failed",
                    "error_code": error_code,
                },
            )
        except (RewardPipelineError, SQLAlchemyError) as exc:
            logger.exception(
                "Refund after failed provisioning did not complete",
                account_id=str(account_id),
                redemption_id=str(redemption_id),
                amount=str(amount),
                error=str(exc),
            )


__all__ = ["GiftCardProvisioningService", "ProvisionOutcome"]
