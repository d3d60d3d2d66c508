"""Credit accounts funding rewards and their append-only ledger."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    JSON,
    Numeric,
    String,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from giftflow_api.db.base import Base


class CreditAccountType(str, Enum):
    CLIENT = "client"
    CAMPAIGN = "campaign"


class CreditAccountStatus(str, Enum):
    ACTIVE = "active"
    DEPLETED = "depleted"


class CreditAccount(Base):
    """Budget pool owned by a client (shared) or a single campaign (isolated).

    ``total_remaining`` is only ever changed through conditional UPDATE
    statements in the credit ledger service so it can never go negative.
    """

    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("total_remaining >= 0", name="ck_credit_accounts_remaining_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_type = Column(SqlEnum(CreditAccountType, name="credit_account_type"), nullable=False)
    owner_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String, nullable=True)
    total_allocated = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    total_used = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    total_remaining = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    status = Column(
        SqlEnum(CreditAccountStatus, name="credit_account_status"),
        nullable=False,
        default=CreditAccountStatus.ACTIVE,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    transactions = relationship("CreditTransaction", back_populates="account", order_by="CreditTransaction.created_at")


class CreditTransactionType(str, Enum):
    ALLOCATION = "allocation"
    REDEMPTION = "redemption"
    REFUND = "refund"


class CreditTransaction(Base):
    """Immutable ledger row; rows are inserted once and never modified."""

    __tablename__ = "credit_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True), ForeignKey("credit_accounts.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    transaction_type = Column(SqlEnum(CreditTransactionType, name="credit_transaction_type"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    balance_before = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    account = relationship("CreditAccount", back_populates="transactions")


class ImmutableLedgerError(RuntimeError):
    """Raised when code attempts to modify or delete a ledger row."""


@event.listens_for(CreditTransaction, "before_update")
def _reject_ledger_update(_mapper, _connection, target: CreditTransaction) -> None:
    raise ImmutableLedgerError(f"Credit transaction {target.id} is append-only")


@event.listens_for(CreditTransaction, "before_delete")
def _reject_ledger_delete(_mapper, _connection, target: CreditTransaction) -> None:
    raise ImmutableLedgerError(f"Credit transaction {target.id} is append-only")
