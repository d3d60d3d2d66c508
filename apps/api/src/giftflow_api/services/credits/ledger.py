"""Credit ledger: balance checks and race-free debits against credit accounts."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.models.campaign import Campaign, CampaignBudgetMode
from giftflow_api.models.credit import (
    CreditAccount,
    CreditAccountStatus,
    CreditAccountType,
    CreditTransaction,
    CreditTransactionType,
)
from giftflow_api.models.system_alert import AlertSeverity, AlertType
from giftflow_api.observability.rewards import get_reward_store
from giftflow_api.services.errors import NotFoundError, OverdraftError, ValidationError
from giftflow_api.services.rewards.alerts import record_system_alert


@dataclass(slots=True)
class CreditCheck:
    """Outcome of a sufficiency check against the campaign's funding account."""

    sufficient: bool
    account_id: UUID
    available: Decimal
    account_type: CreditAccountType


@dataclass(slots=True)
class LedgerMovement:
    """Committed balance change plus its ledger row (``None`` if the row failed)."""

    account_id: UUID
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    transaction: CreditTransaction | None
    depleted: bool = False


def _coerce_amount(amount: Any) -> Decimal:
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValidationError(f"Invalid credit amount: {amount!r}") from exc
    if not value.is_finite() or value <= 0:
        raise ValidationError("Credit amount must be positive")
    return value.quantize(Decimal("0.01"))


class CreditLedgerService:
    """Resolve, check, and mutate credit accounts.

    Balances change only through single conditional UPDATE statements; the
    ``WHERE total_remaining >= amount`` guard is what keeps concurrent debits
    from overdrawing an account.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._store = get_reward_store()

    async def resolve_account(self, campaign: Campaign) -> CreditAccount:
        """Return the account funding ``campaign`` according to its budget mode."""

        if campaign.budget_mode == CampaignBudgetMode.ISOLATED:
            if campaign.credit_account_id is None:
                raise NotFoundError("Campaign has no credit account", code="GC-008")
            account = await self._db.get(CreditAccount, campaign.credit_account_id)
        else:
            stmt = (
                select(CreditAccount)
                .where(
                    CreditAccount.account_type == CreditAccountType.CLIENT,
                    CreditAccount.owner_id == campaign.client_id,
                )
                .order_by(CreditAccount.created_at.asc(), CreditAccount.id.asc())
                .limit(1)
            )
            account = (await self._db.execute(stmt)).scalar_one_or_none()

        if account is None:
            raise NotFoundError("No credit account found for campaign billing entity", code="GC-008")
        return account

    async def check_sufficient(self, campaign_id: UUID, amount: Decimal | float | int) -> CreditCheck:
        value = _coerce_amount(amount)
        campaign = await self._db.get(Campaign, campaign_id)
        if campaign is None:
            raise NotFoundError("Campaign not found")
        account = await self.resolve_account(campaign)
        available = Decimal(account.total_remaining or 0)
        return CreditCheck(
            sufficient=available >= value,
            account_id=account.id,
            available=available,
            account_type=account.account_type,
        )

    async def debit(
        self,
        account_id: UUID,
        amount: Decimal | float | int,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> LedgerMovement:
        """Atomically subtract ``amount``; raises :class:`OverdraftError` if it does not fit."""

        value = _coerce_amount(amount)
        stmt = (
            update(CreditAccount)
            .where(CreditAccount.id == account_id, CreditAccount.total_remaining >= value)
            .values(
                total_remaining=CreditAccount.total_remaining - value,
                total_used=CreditAccount.total_used + value,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount != 1:
            await self._db.rollback()
            account = await self._db.get(CreditAccount, account_id, populate_existing=True)
            if account is None:
                raise NotFoundError("Credit account not found")
            available = Decimal(account.total_remaining or 0)
            self._store.record_credit("overdraft")
            logger.warning(
                "Credit debit rejected",
                account_id=str(account_id),
                requested=str(value),
                available=str(available),
            )
            raise OverdraftError(
                f"Insufficient credits. Required: ${value}, Available: ${available}",
                account_id=account_id,
                requested=value,
                available=available,
            )

        account = await self._db.get(CreditAccount, account_id, populate_existing=True)
        balance_after = Decimal(account.total_remaining)
        depleted = False
        if balance_after <= 0:
            depleted = await self._mark_depleted(account_id)
        await self._db.commit()
        if depleted:
            await self._db.refresh(account)

        self._store.record_credit("debit")
        logger.info(
            "Credit debited",
            account_id=str(account_id),
            amount=str(value),
            balance_after=str(balance_after),
        )

        transaction = await self._append_ledger_row(
            account_id=account_id,
            transaction_type=CreditTransactionType.REDEMPTION,
            amount=-value,
            balance_before=balance_after + value,
            balance_after=balance_after,
            metadata=metadata,
        )
        if depleted:
            await record_system_alert(
                self._db,
                severity=AlertSeverity.WARNING,
                alert_type=AlertType.LOW_CREDIT_BALANCE,
                message=f"Credit account depleted (remaining ${balance_after})",
                metadata={"account_id": account_id, "remaining": str(balance_after)},
            )

        return LedgerMovement(
            account_id=account_id,
            amount=value,
            balance_before=balance_after + value,
            balance_after=balance_after,
            transaction=transaction,
            depleted=depleted,
        )

    async def refund(
        self,
        account_id: UUID,
        amount: Decimal | float | int,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> LedgerMovement:
        """Compensate an earlier debit whose reward could not be provisioned."""

        value = _coerce_amount(amount)
        return await self._credit(
            account_id,
            value,
            transaction_type=CreditTransactionType.REFUND,
            values={
                "total_remaining": CreditAccount.total_remaining + value,
                "total_used": CreditAccount.total_used - value,
                "status": CreditAccountStatus.ACTIVE,
            },
            metadata=metadata,
        )

    async def allocate(
        self,
        account_id: UUID,
        amount: Decimal | float | int,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> LedgerMovement:
        value = _coerce_amount(amount)
        return await self._credit(
            account_id,
            value,
            transaction_type=CreditTransactionType.ALLOCATION,
            values={
                "total_remaining": CreditAccount.total_remaining + value,
                "total_allocated": CreditAccount.total_allocated + value,
                "status": CreditAccountStatus.ACTIVE,
            },
            metadata=metadata,
        )

    async def _credit(
        self,
        account_id: UUID,
        value: Decimal,
        *,
        transaction_type: CreditTransactionType,
        values: dict[str, Any],
        metadata: Mapping[str, Any] | None,
    ) -> LedgerMovement:
        stmt = (
            update(CreditAccount)
            .where(CreditAccount.id == account_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount != 1:
            await self._db.rollback()
            raise NotFoundError("Credit account not found")

        account = await self._db.get(CreditAccount, account_id, populate_existing=True)
        balance_after = Decimal(account.total_remaining)
        await self._db.commit()

        self._store.record_credit(transaction_type.value)
        logger.info(
            "Credit account credited",
            account_id=str(account_id),
            amount=str(value),
            transaction_type=transaction_type.value,
            balance_after=str(balance_after),
        )

        transaction = await self._append_ledger_row(
            account_id=account_id,
            transaction_type=transaction_type,
            amount=value,
            balance_before=balance_after - value,
            balance_after=balance_after,
            metadata=metadata,
        )
        return LedgerMovement(
            account_id=account_id,
            amount=value,
            balance_before=balance_after - value,
            balance_after=balance_after,
            transaction=transaction,
        )

    async def _mark_depleted(self, account_id: UUID) -> bool:
        stmt = (
            update(CreditAccount)
            .where(
                CreditAccount.id == account_id,
                CreditAccount.status == CreditAccountStatus.ACTIVE,
                CreditAccount.total_remaining <= 0,
            )
            .values(status=CreditAccountStatus.DEPLETED)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return result.rowcount == 1

    async def _append_ledger_row(
        self,
        *,
        account_id: UUID,
        transaction_type: CreditTransactionType,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        metadata: Mapping[str, Any] | None,
    ) -> CreditTransaction | None:
        """Write the audit row; the balance change it describes is already committed."""

        transaction = CreditTransaction(
            account_id=account_id,
            transaction_type=transaction_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            metadata_json={key: str(value) if value is not None else None for key, value in (metadata or {}).items()},
        )
        self._db.add(transaction)
        try:
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            self._store.record_credit("ledger_write_failed")
            logger.exception(
                "Credit ledger row could not be written",
                account_id=str(account_id),
                transaction_type=transaction_type.value,
                amount=str(amount),
                error=str(exc),
            )
            return None
        return transaction


__all__ = ["CreditCheck", "CreditLedgerService", "LedgerMovement"]
