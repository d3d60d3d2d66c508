"""Resolve inbound identity hints to recipients inside a campaign's audience."""

from __future__ import annotations

import re
from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.models.campaign import Campaign
from giftflow_api.models.recipient import Recipient

_NON_DIGIT = re.compile(r"\D")


def normalize_phone(phone: str | None) -> str | None:
    """Reduce a phone number to its trailing 10 digits."""

    if not phone:
        return None
    digits = _NON_DIGIT.sub("", phone)
    if not digits:
        return None
    return digits[-10:]


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


@dataclass(slots=True)
class IdentityHint:
    phone: str | None = None
    email: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (normalize_phone(self.phone) or normalize_email(self.email))


class RecipientMatcher:
    """Phone suffix first, then exact email; first recipient by creation wins."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def match(self, campaign_id: UUID, hint: IdentityHint) -> Recipient | None:
        campaign = await self._db.get(Campaign, campaign_id)
        if campaign is None or campaign.audience_id is None:
            return None
        return await self.match_in_audience(campaign.audience_id, hint, campaign_id=campaign_id)

    async def match_in_audience(
        self,
        audience_id: UUID | None,
        hint: IdentityHint,
        *,
        campaign_id: UUID | None = None,
    ) -> Recipient | None:
        phone = normalize_phone(hint.phone)
        if phone:
            recipient = await self._first(
                audience_id,
                Recipient.phone.like(f"%{phone}"),
            )
            if recipient is not None:
                return recipient

        email = normalize_email(hint.email)
        if email:
            recipient = await self._first(audience_id, func.lower(Recipient.email) == email)
            if recipient is not None:
                return recipient

        logger.info(
            "No recipient matched identity hint",
            campaign_id=str(campaign_id) if campaign_id else None,
            has_phone=bool(phone),
            has_email=bool(email),
        )
        return None

    async def _first(self, audience_id: UUID | None, criterion) -> Recipient | None:
        stmt = select(Recipient).where(criterion)
        if audience_id is not None:
            stmt = stmt.where(Recipient.audience_id == audience_id)
        stmt = stmt.order_by(Recipient.created_at.asc(), Recipient.id.asc()).limit(1)
        return (await self._db.execute(stmt)).scalar_one_or_none()


__all__ = ["IdentityHint", "RecipientMatcher", "normalize_email", "normalize_phone"]
