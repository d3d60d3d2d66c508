"""Waterfall gift card provisioning: cheapest inventory first, then issuing APIs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Union
from uuid import UUID

from loguru import logger
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.core.settings import settings
from giftflow_api.models.gift_card import (
    GiftCard,
    GiftCardBrand,
    GiftCardPool,
    GiftCardPoolType,
    GiftCardStatus,
)
from giftflow_api.models.redemption import RewardSource
from giftflow_api.models.system_alert import AlertSeverity, AlertType
from giftflow_api.observability.rewards import get_reward_store
from giftflow_api.observability.tracing import pipeline_span
from giftflow_api.services.errors import ConflictError
from giftflow_api.services.rewards.alerts import record_system_alert
from giftflow_api.services.rewards.issuing_client import CardIssuingClient, CardIssuingError

NO_INVENTORY_CODE = "GC-003"
API_FAILURE_CODE = "GC-004"
UNKNOWN_FAILURE_CODE = "GC-015"


@dataclass(slots=True)
class ProvisionedCard:
    card: GiftCard
    pool: GiftCardPool
    source: RewardSource
    cost: Decimal | None = None


@dataclass(slots=True)
class ProvisioningFailure:
    error: str
    code: str
    alert_id: UUID | None = None
    attempts: list[str] = field(default_factory=list)


ProvisionResult = Union[ProvisionedCard, ProvisioningFailure]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _pool_cost():
    return func.coalesce(GiftCardPool.cost_per_card, GiftCardPool.card_value)


class RewardProvisioner:
    """Claim or issue one card for a brand/denomination.

    Inventory claims flip one card ``available -> claimed`` and decrement the
    pool counter in the same transaction, each guarded by a conditional UPDATE,
    so concurrent callers never receive the same card.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        issuing_client: CardIssuingClient | None = None,
        claim_attempts: int | None = None,
        low_inventory_threshold: int | None = None,
    ) -> None:
        self._db = db_session
        self._issuing_client = issuing_client or CardIssuingClient.from_settings(settings)
        self._claim_attempts = max(1, claim_attempts or settings.provisioning_claim_attempts)
        self._low_inventory_threshold = (
            settings.low_inventory_threshold if low_inventory_threshold is None else low_inventory_threshold
        )
        self._store = get_reward_store()

    async def provision(
        self,
        brand_id: UUID,
        denomination: Decimal,
        *,
        recipient_id: UUID | None = None,
        campaign_id: UUID | None = None,
        reference: str | None = None,
    ) -> ProvisionResult:
        attempts: list[str] = []
        with pipeline_span("provision_card", brand_id=brand_id, denomination=denomination):
            provisioned = await self.claim_from_inventory(
                brand_id, denomination, recipient_id=recipient_id, attempts=attempts
            )
            if provisioned is None:
                provisioned = await self.issue_from_api(
                    brand_id,
                    denomination,
                    recipient_id=recipient_id,
                    reference=reference or f"{campaign_id}:{recipient_id}",
                    attempts=attempts,
                )

        if provisioned is not None:
            self._store.record_provisioning(source=provisioned.source.value, success=True)
            logger.info(
                "Gift card provisioned",
                card_id=str(provisioned.card.id),
                pool_id=str(provisioned.pool.id),
                source=provisioned.source.value,
                recipient_id=str(recipient_id) if recipient_id else None,
            )
            return provisioned

        api_attempted = any(entry.startswith("api:") for entry in attempts)
        code = API_FAILURE_CODE if api_attempted else NO_INVENTORY_CODE
        error = attempts[-1] if attempts else "No gift cards available for this brand and denomination"
        alert = await record_system_alert(
            self._db,
            severity=AlertSeverity.CRITICAL,
            alert_type=AlertType.PROVISIONING_FAILURE,
            message=f"Gift card provisioning failed: {error}",
            metadata={
                "brand_id": brand_id,
                "denomination": str(denomination),
                "recipient_id": recipient_id,
                "campaign_id": campaign_id,
                "error_code": code,
                "attempts": attempts,
            },
        )
        self._store.record_provisioning(source=None, success=False, error_code=code)
        return ProvisioningFailure(
            error=error,
            code=code,
            alert_id=alert.id if alert is not None else None,
            attempts=attempts,
        )

    async def claim_from_inventory(
        self,
        brand_id: UUID,
        denomination: Decimal,
        *,
        recipient_id: UUID | None = None,
        attempts: list[str] | None = None,
    ) -> ProvisionedCard | None:
        """Claim from the cheapest inventory pool that still has cards."""

        attempts = attempts if attempts is not None else []
        stmt = (
            select(GiftCardPool.id)
            .where(
                GiftCardPool.brand_id == brand_id,
                GiftCardPool.card_value == denomination,
                GiftCardPool.pool_type == GiftCardPoolType.INVENTORY,
                GiftCardPool.is_active.is_(True),
                GiftCardPool.available_cards > 0,
            )
            .order_by(_pool_cost().asc(), GiftCardPool.created_at.asc(), GiftCardPool.id.asc())
        )
        # Ids only: a rolled-back claim expires every loaded instance.
        pool_ids = list((await self._db.execute(stmt)).scalars().all())
        if not pool_ids:
            attempts.append("inventory:no pools with available cards")
            return None

        for pool_id in pool_ids:
            try:
                card = await self._claim_from_pool(pool_id, recipient_id)
            except ConflictError as exc:
                attempts.append(f"inventory:{pool_id}:{exc.message}")
                logger.warning("Inventory claim kept losing races", pool_id=str(pool_id))
                continue
            if card is None:
                attempts.append(f"inventory:{pool_id}:exhausted")
                continue
            card_id = card.id
            await self._check_pool_level(await self._db.get(GiftCardPool, pool_id, populate_existing=True))
            # A failed alert commit rolls back and expires both rows.
            card = await self._db.get(GiftCard, card_id)
            pool = await self._db.get(GiftCardPool, pool_id)
            return ProvisionedCard(card=card, pool=pool, source=RewardSource.INVENTORY, cost=pool.cost_per_card)

        return None

    async def _claim_from_pool(self, pool_id: UUID, recipient_id: UUID | None) -> GiftCard | None:
        today = _utcnow().date()
        for _ in range(self._claim_attempts):
            candidate_stmt = (
                select(GiftCard.id)
                .where(
                    GiftCard.pool_id == pool_id,
                    GiftCard.status == GiftCardStatus.AVAILABLE,
                    or_(GiftCard.expiration_date.is_(None), GiftCard.expiration_date >= today),
                )
                .order_by(GiftCard.created_at.asc(), GiftCard.id.asc())
                .limit(1)
            )
            candidate_id = await self._db.scalar(candidate_stmt)
            if candidate_id is None:
                return None

            now = _utcnow()
            claim = await self._db.execute(
                update(GiftCard)
                .where(GiftCard.id == candidate_id, GiftCard.status == GiftCardStatus.AVAILABLE)
                .values(status=GiftCardStatus.CLAIMED, claimed_by_recipient_id=recipient_id, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount != 1:
                # Another claimer committed first; nothing was written.
                continue

            counter = await self._db.execute(
                update(GiftCardPool)
                .where(GiftCardPool.id == pool_id, GiftCardPool.available_cards > 0)
                .values(available_cards=GiftCardPool.available_cards - 1)
                .execution_options(synchronize_session=False)
            )
            if counter.rowcount != 1:
                await self._db.rollback()
                return None

            await self._db.commit()
            return await self._db.get(GiftCard, candidate_id, populate_existing=True)

        raise ConflictError("Card claim lost every race", code="claim_conflict")

    async def _check_pool_level(self, pool: GiftCardPool) -> None:
        """Alert once when a claim empties a pool or drops it below the threshold."""

        remaining = pool.available_cards or 0
        if remaining == 0:
            severity = AlertSeverity.CRITICAL
            message = f"Gift card pool empty: {pool.pool_name or pool.id} (${pool.card_value})"
        elif remaining + 1 == self._low_inventory_threshold:
            severity = AlertSeverity.WARNING
            message = f"Gift card pool low: {pool.pool_name or pool.id} (${pool.card_value}), {remaining} cards left"
        else:
            return
        await record_system_alert(
            self._db,
            severity=severity,
            alert_type=AlertType.LOW_INVENTORY,
            message=message,
            metadata={
                "pool_id": pool.id,
                "brand_id": pool.brand_id,
                "denomination": str(pool.card_value),
                "available_cards": remaining,
                "threshold": self._low_inventory_threshold,
            },
        )

    async def issue_from_api(
        self,
        brand_id: UUID,
        denomination: Decimal,
        *,
        recipient_id: UUID | None = None,
        reference: str,
        attempts: list[str] | None = None,
    ) -> ProvisionedCard | None:
        """Ask each configured issuing pool, cheapest first, for a fresh card."""

        attempts = attempts if attempts is not None else []
        stmt = (
            select(GiftCardPool)
            .where(
                GiftCardPool.brand_id == brand_id,
                GiftCardPool.card_value == denomination,
                GiftCardPool.pool_type == GiftCardPoolType.API_CONFIG,
                GiftCardPool.is_active.is_(True),
            )
            .order_by(_pool_cost().asc(), GiftCardPool.created_at.asc(), GiftCardPool.id.asc())
        )
        pools = [
            (pool.id, dict(pool.api_config or {}))
            for pool in (await self._db.execute(stmt)).scalars().all()
        ]
        if not pools:
            attempts.append("api:no issuing pools configured")
            return None

        brand = await self._db.get(GiftCardBrand, brand_id)
        brand_code = brand.code if brand is not None else str(brand_id)
        for pool_id, api_config in pools:
            try:
                issued = await self._issuing_client.issue_card(
                    brand_code=brand_code,
                    denomination=denomination,
                    reference=reference,
                    api_config=api_config,
                )
            except CardIssuingError as exc:
                attempts.append(f"api:{pool_id}:{exc}")
                logger.warning("Card issuing API failed", pool_id=str(pool_id), url=exc.url, error=str(exc))
                continue

            now = _utcnow()
            card = GiftCard(
                pool_id=pool_id,
                card_code=issued.card_code,
                card_number=issued.card_number,
                expiration_date=issued.expiration_date,
                status=GiftCardStatus.DELIVERED,
                claimed_by_recipient_id=recipient_id,
                claimed_at=now,
                delivered_at=now,
                provider_transaction_id=issued.transaction_id,
                metadata_json={"reference": reference},
            )
            self._db.add(card)
            try:
                await self._db.commit()
            except SQLAlchemyError as exc:
                await self._db.rollback()
                attempts.append(f"api:{pool_id}:issued card could not be stored")
                logger.exception(
                    "Issued gift card could not be persisted",
                    pool_id=str(pool_id),
                    transaction_id=issued.transaction_id,
                    error=str(exc),
                )
                continue
            pool = await self._db.get(GiftCardPool, pool_id)
            return ProvisionedCard(card=card, pool=pool, source=RewardSource.API, cost=pool.cost_per_card)

        return None


__all__ = [
    "API_FAILURE_CODE",
    "NO_INVENTORY_CODE",
    "ProvisionResult",
    "ProvisionedCard",
    "ProvisioningFailure",
    "RewardProvisioner",
    "UNKNOWN_FAILURE_CODE",
]
