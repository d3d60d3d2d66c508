"""Operational alerts raised by the reward pipeline."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, JSON, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from giftflow_api.db.base import Base


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertType(str, Enum):
    PROVISIONING_FAILURE = "provisioning_failure"
    LOW_CREDIT_BALANCE = "low_credit_balance"
    LOW_INVENTORY = "low_inventory"


class SystemAlert(Base):
    """Alert surfaced to operators; never shown to recipients."""

    __tablename__ = "system_alerts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    severity = Column(SqlEnum(AlertSeverity, name="system_alert_severity"), nullable=False)
    alert_type = Column(SqlEnum(AlertType, name="system_alert_type"), nullable=False, index=True)
    message = Column(Text, nullable=False)
    metadata_json = Column("metadata", JSON, nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
