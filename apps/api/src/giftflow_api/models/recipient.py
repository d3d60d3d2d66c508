"""Mail recipients and their messaging consent."""

from __future__ import annotations

import re
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, validates

from giftflow_api.db.base import Base

_NON_DIGIT = re.compile(r"\D")


class SmsOptInStatus(str, Enum):
    """Consent state; only ``opted_in`` recipients may receive rewards by SMS."""

    PENDING = "pending"
    OPTED_IN = "opted_in"
    OPTED_OUT = "opted_out"
    INVALID_RESPONSE = "invalid_response"


class Recipient(Base):
    """Person on a campaign audience, addressed by a printed redemption code."""

    __tablename__ = "recipients"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    audience_id = Column(UUID(as_uuid=True), ForeignKey("audiences.id", ondelete="CASCADE"), nullable=False, index=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    phone = Column(String(20), nullable=True, index=True)
    email = Column(String, nullable=True, index=True)
    redemption_code = Column(String(50), nullable=True, unique=True, index=True)
    sms_opt_in_status = Column(
        SqlEnum(SmsOptInStatus, name="sms_opt_in_status"),
        nullable=False,
        default=SmsOptInStatus.PENDING,
    )
    sms_opt_in_sent_at = Column(DateTime(timezone=True), nullable=True)
    opted_in_at = Column(DateTime(timezone=True), nullable=True)
    opted_out_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    audience = relationship("Audience", back_populates="recipients")

    @validates("phone")
    def _normalize_phone(self, _key: str, value: str | None) -> str | None:
        """Store digits only, keeping a leading ``+`` for E.164 numbers."""

        if value is None:
            return None
        stripped = value.strip()
        digits = _NON_DIGIT.sub("", stripped)
        if not digits:
            return None
        return f"+{digits}" if stripped.startswith("+") else digits

    @validates("redemption_code")
    def _normalize_code(self, _key: str, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip().upper() or None

    @property
    def display_name(self) -> str:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts)
