"""Recipient-facing redemptions and their delivery attempts."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from giftflow_api.db.base import Base


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    PROVISIONED = "provisioned"
    VIEWED = "viewed"
    REDEEMED = "redeemed"
    REJECTED = "rejected"


class RewardSource(str, Enum):
    INVENTORY = "inventory"
    API = "api"


class GiftCardRedemption(Base):
    """One reward claim by one recipient.

    A recipient can hold one redemption per campaign condition; rows created
    outside a condition (manual approval) leave ``condition_number`` empty.
    """

    __tablename__ = "gift_card_redemptions"
    __table_args__ = (
        UniqueConstraint(
            "campaign_id",
            "recipient_id",
            "condition_number",
            name="uq_redemption_campaign_recipient_condition",
        ),
        # NULL condition numbers escape the constraint above.
        Index(
            "uq_redemption_pending_unconditioned",
            "campaign_id",
            "recipient_id",
            unique=True,
            postgresql_where=text("condition_number IS NULL AND status = 'PENDING'"),
            sqlite_where=text("condition_number IS NULL AND status = 'PENDING'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    recipient_id = Column(UUID(as_uuid=True), ForeignKey("recipients.id", ondelete="CASCADE"), nullable=False, index=True)
    condition_number = Column(Integer, nullable=True)
    redemption_code = Column(String(50), nullable=True, index=True)
    redemption_token = Column(String(64), nullable=False, unique=True)
    gift_card_id = Column(UUID(as_uuid=True), ForeignKey("gift_cards.id", ondelete="SET NULL"), nullable=True)
    amount_charged = Column(Numeric(12, 2), nullable=True)
    account_charged_id = Column(
        UUID(as_uuid=True), ForeignKey("credit_accounts.id", ondelete="SET NULL"), nullable=True
    )
    source = Column(SqlEnum(RewardSource, name="reward_source"), nullable=True)
    status = Column(
        SqlEnum(RedemptionStatus, name="gift_card_redemption_status"),
        nullable=False,
        default=RedemptionStatus.PENDING,
    )
    requester_ip = Column(String(64), nullable=True)
    requester_user_agent = Column(String, nullable=True)
    rejection_reason = Column(String, nullable=True)
    provisioning_lease = Column(String(32), nullable=True)
    provisioning_started_at = Column(DateTime(timezone=True), nullable=True)
    provisioned_at = Column(DateTime(timezone=True), nullable=True)
    viewed_at = Column(DateTime(timezone=True), nullable=True)
    redeemed_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    gift_card = relationship("GiftCard")
    deliveries = relationship("GiftCardDelivery", back_populates="redemption")


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class GiftCardDelivery(Base):
    """Single outbound attempt to hand a redemption to its recipient."""

    __tablename__ = "gift_card_deliveries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    redemption_id = Column(
        UUID(as_uuid=True), ForeignKey("gift_card_redemptions.id", ondelete="CASCADE"), nullable=True, index=True
    )
    recipient_id = Column(UUID(as_uuid=True), ForeignKey("recipients.id", ondelete="CASCADE"), nullable=False, index=True)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    delivery_method = Column(String(16), nullable=False, default="sms")
    destination = Column(String, nullable=True)
    message_body = Column(String, nullable=True)
    status = Column(
        SqlEnum(DeliveryStatus, name="gift_card_delivery_status"),
        nullable=False,
        default=DeliveryStatus.PENDING,
    )
    provider = Column(String(32), nullable=True)
    provider_message_id = Column(String(128), nullable=True, index=True)
    error_message = Column(String, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    redemption = relationship("GiftCardRedemption", back_populates="deliveries")
