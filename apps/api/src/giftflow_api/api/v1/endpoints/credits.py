"""Credit account endpoints used by operators and billing tooling."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.api.dependencies.security import require_internal_api_key
from giftflow_api.db.session import get_session
from giftflow_api.services.credits.ledger import CreditLedgerService
from giftflow_api.services.errors import RewardPipelineError, to_http_exception

router = APIRouter(
    prefix="/credit",
    tags=["credit"],
    dependencies=[Depends(require_internal_api_key)],
)


class CreditCheckResponse(BaseModel):
    sufficient: bool
    account_id: str = Field(alias="accountId")
    account_type: str = Field(alias="accountType")
    available: float
    requested: float

    model_config = {"populate_by_name": True}


class AllocateCreditRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    note: Optional[str] = Field(default=None, max_length=500)
    reference: Optional[str] = None


class LedgerMovementResponse(BaseModel):
    account_id: str = Field(alias="accountId")
    amount: float
    balance_before: float = Field(alias="balanceBefore")
    balance_after: float = Field(alias="balanceAfter")
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")

    model_config = {"populate_by_name": True}


@router.get(
    "/campaigns/{campaign_id}/check",
    response_model=CreditCheckResponse,
    response_model_by_alias=True,
)
async def check_campaign_credit(
    campaign_id: UUID,
    amount: Decimal = Query(..., gt=0),
    db: AsyncSession = Depends(get_session),
) -> CreditCheckResponse:
    """Report whether the campaign's funding account covers ``amount``."""

    try:
        check = await CreditLedgerService(db).check_sufficient(campaign_id, amount)
    except RewardPipelineError as exc:
        raise to_http_exception(exc) from exc
    return CreditCheckResponse(
        sufficient=check.sufficient,
        account_id=str(check.account_id),
        account_type=check.account_type.value,
        available=float(check.available),
        requested=float(amount),
    )


@router.post(
    "/accounts/{account_id}/allocate",
    response_model=LedgerMovementResponse,
    response_model_by_alias=True,
)
async def allocate_credit(
    account_id: UUID,
    payload: AllocateCreditRequest,
    db: AsyncSession = Depends(get_session),
) -> LedgerMovementResponse:
    metadata: Dict[str, Any] = {"source": "api"}
    if payload.note:
        metadata["note"] = payload.note
    if payload.reference:
        metadata["reference"] = payload.reference
    try:
        movement = await CreditLedgerService(db).allocate(account_id, payload.amount, metadata=metadata)
    except RewardPipelineError as exc:
        raise to_http_exception(exc) from exc
    return LedgerMovementResponse(
        account_id=str(movement.account_id),
        amount=float(movement.amount),
        balance_before=float(movement.balance_before),
        balance_after=float(movement.balance_after),
        transaction_id=str(movement.transaction.id) if movement.transaction is not None else None,
    )
