"""Campaign, condition, and per-recipient condition progress models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from giftflow_api.db.base import Base


class Client(Base):
    """Tenant that owns audiences, campaigns, and the shared credit pool."""

    __tablename__ = "clients"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    audiences = relationship("Audience", back_populates="client")
    campaigns = relationship("Campaign", back_populates="client")


class Audience(Base):
    """Mailing list a campaign targets; recipients belong to exactly one."""

    __tablename__ = "audiences"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    client = relationship("Client", back_populates="audiences")
    recipients = relationship("Recipient", back_populates="audience")


class CampaignBudgetMode(str, Enum):
    """Which credit account funds a campaign's rewards."""

    SHARED = "shared"
    ISOLATED = "isolated"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class Campaign(Base):
    """Direct-mail campaign carrying reward conditions and a budget."""

    __tablename__ = "campaigns"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    audience_id = Column(UUID(as_uuid=True), ForeignKey("audiences.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String, nullable=False)
    status = Column(
        SqlEnum(CampaignStatus, name="campaign_status"),
        nullable=False,
        default=CampaignStatus.ACTIVE,
    )
    budget_mode = Column(
        SqlEnum(CampaignBudgetMode, name="campaign_budget_mode"),
        nullable=False,
        default=CampaignBudgetMode.SHARED,
    )
    credit_account_id = Column(
        UUID(as_uuid=True), ForeignKey("credit_accounts.id", ondelete="SET NULL"), nullable=True
    )
    sms_template = Column(Text, nullable=True)
    sms_opt_in_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    client = relationship("Client", back_populates="campaigns")
    audience = relationship("Audience")
    conditions = relationship(
        "CampaignCondition",
        back_populates="campaign",
        order_by="CampaignCondition.condition_number",
    )


class ConditionTriggerType(str, Enum):
    CALL_COMPLETED = "call_completed"
    CRM_EVENT = "crm_event"
    TIME_DELAYED = "time_delayed"


class CampaignCondition(Base):
    """Ordered gate; condition N unlocks only after condition N-1 is met."""

    __tablename__ = "campaign_conditions"
    __table_args__ = (
        UniqueConstraint("campaign_id", "condition_number", name="uq_campaign_condition_number"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    condition_number = Column(Integer, nullable=False)
    condition_name = Column(String, nullable=True)
    trigger_type = Column(SqlEnum(ConditionTriggerType, name="condition_trigger_type"), nullable=False)
    time_delay_hours = Column(Numeric(8, 2), nullable=True)
    crm_event_name = Column(String, nullable=True)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("gift_card_brands.id", ondelete="SET NULL"), nullable=True)
    card_value = Column(Numeric(12, 2), nullable=True)
    sms_template = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    campaign = relationship("Campaign", back_populates="conditions")
    brand = relationship("GiftCardBrand")


class RecipientConditionStatus(Base):
    """Progress of one recipient through one campaign condition.

    ``is_met`` records that the gate unlocked; ``triggered_at`` records that the
    reward actually went out. A met condition with no ``triggered_at`` is the
    retry signal for provisioning.
    """

    __tablename__ = "recipient_condition_status"
    __table_args__ = (
        UniqueConstraint(
            "recipient_id",
            "campaign_id",
            "condition_number",
            name="uq_recipient_condition_status",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    recipient_id = Column(UUID(as_uuid=True), ForeignKey("recipients.id", ondelete="CASCADE"), nullable=False, index=True)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    condition_number = Column(Integer, nullable=False)
    is_met = Column(Boolean, nullable=False, default=False, server_default="false")
    met_at = Column(DateTime(timezone=True), nullable=True)
    triggered_at = Column(DateTime(timezone=True), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0, server_default="0")
    last_error = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
