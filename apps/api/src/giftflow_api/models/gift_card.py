"""Gift card brands, pools, and individual cards."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from giftflow_api.db.base import Base


class GiftCardBrand(Base):
    """Merchant brand; ``code`` is the identifier the issuing API expects."""

    __tablename__ = "gift_card_brands"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    code = Column(String, nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class GiftCardPoolType(str, Enum):
    INVENTORY = "inventory"
    API_CONFIG = "api_config"


class GiftCardPool(Base):
    """A source of cards for one brand and denomination.

    Inventory pools hold pre-purchased cards and track ``available_cards``;
    api_config pools issue cards on demand through ``api_config``.
    """

    __tablename__ = "gift_card_pools"
    __table_args__ = (
        CheckConstraint("available_cards >= 0", name="ck_gift_card_pools_available_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=True, index=True)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("gift_card_brands.id", ondelete="CASCADE"), nullable=False, index=True)
    pool_name = Column(String, nullable=True)
    card_value = Column(Numeric(12, 2), nullable=False)
    pool_type = Column(SqlEnum(GiftCardPoolType, name="gift_card_pool_type"), nullable=False)
    cost_per_card = Column(Numeric(12, 2), nullable=True)
    available_cards = Column(Integer, nullable=False, default=0, server_default="0")
    total_cards = Column(Integer, nullable=False, default=0, server_default="0")
    api_config = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    brand = relationship("GiftCardBrand")
    cards = relationship("GiftCard", back_populates="pool")


class GiftCardStatus(str, Enum):
    AVAILABLE = "available"
    CLAIMED = "claimed"
    DELIVERED = "delivered"
    FAILED = "failed"


class GiftCard(Base):
    """Single card; ``available`` to ``claimed`` happens at most once."""

    __tablename__ = "gift_cards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    pool_id = Column(UUID(as_uuid=True), ForeignKey("gift_card_pools.id", ondelete="CASCADE"), nullable=False, index=True)
    card_code = Column(String, nullable=False)
    card_number = Column(String, nullable=True)
    expiration_date = Column(Date, nullable=True)
    status = Column(
        SqlEnum(GiftCardStatus, name="gift_card_status"),
        nullable=False,
        default=GiftCardStatus.AVAILABLE,
        index=True,
    )
    claimed_by_recipient_id = Column(
        UUID(as_uuid=True), ForeignKey("recipients.id", ondelete="SET NULL"), nullable=True
    )
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    provider_transaction_id = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    pool = relationship("GiftCardPool", back_populates="cards")
