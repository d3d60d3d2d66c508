"""Inbound event audit rows and CRM integration configuration."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    JSON,
    String,
    func,
    update,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.db.base import Base


class EventSource(str, Enum):
    TELEPHONY = "telephony"
    CRM = "crm"
    SMS = "sms"
    SYSTEM = "system"


class PipelineEvent(Base):
    """Normalized record of one inbound event.

    Everything except ``processed``/``processed_at`` is written at insert time.
    """

    __tablename__ = "pipeline_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    source = Column(SqlEnum(EventSource, name="pipeline_event_source"), nullable=False)
    provider = Column(String(32), nullable=False)
    event_type = Column(String(128), nullable=False)
    raw_event_type = Column(String(128), nullable=True)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="SET NULL"), nullable=True, index=True)
    recipient_id = Column(UUID(as_uuid=True), ForeignKey("recipients.id", ondelete="SET NULL"), nullable=True, index=True)
    integration_id = Column(
        UUID(as_uuid=True), ForeignKey("crm_integrations.id", ondelete="SET NULL"), nullable=True, index=True
    )
    raw_payload = Column(JSON, nullable=False)
    signature_valid = Column(Boolean, nullable=True)
    matched = Column(Boolean, nullable=False, default=False)
    condition_triggered = Column(Boolean, nullable=False, default=False)
    processed = Column(Boolean, nullable=False, default=False, server_default="false")
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


async def mark_event_processed(session: AsyncSession, event_id: PyUUID, *, processed_at: datetime) -> bool:
    """Flip ``processed`` once; returns False when another run got there first."""

    stmt = (
        update(PipelineEvent)
        .where(PipelineEvent.id == event_id, PipelineEvent.processed.is_(False))
        .values(processed=True, processed_at=processed_at)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)


class CrmIntegration(Base):
    """Inbound CRM webhook configuration for a campaign.

    ``event_mappings`` is a list of ``{"event_type", "event_filter",
    "condition_number"}`` rules routing provider events to conditions.
    """

    __tablename__ = "crm_integrations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    webhook_secret = Column(String, nullable=True)
    event_mappings = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    last_event_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
