from __future__ import annotations

import pytest

from giftflow_api.models import Recipient
from giftflow_api.services.recipients.matcher import IdentityHint, RecipientMatcher, normalize_phone


def test_normalize_phone_keeps_last_ten_digits() -> None:
    assert normalize_phone("+1 (555) 555-0123") == "5555550123"
    assert normalize_phone("555.555.0123") == "5555550123"
    assert normalize_phone("ext") is None
    assert normalize_phone(None) is None


@pytest.mark.asyncio
async def test_phone_suffix_match_inside_audience(session_factory, build_world) -> None:
    world = await build_world(phone="+15555550123")
    other = await build_world(phone="+15555550123")

    async with session_factory() as session:
        matcher = RecipientMatcher(session)
        recipient = await matcher.match(world.campaign_id, IdentityHint(phone="(555) 555-0123"))
        other_recipient = await matcher.match(other.campaign_id, IdentityHint(phone="555-555-0123"))

    assert recipient is not None and recipient.id == world.recipient_id
    assert other_recipient is not None and other_recipient.id == other.recipient_id


@pytest.mark.asyncio
async def test_email_fallback_is_case_insensitive(session_factory, build_world) -> None:
    world = await build_world(phone="+15555550199", email="Jamie@Example.com")

    async with session_factory() as session:
        recipient = await RecipientMatcher(session).match(
            world.campaign_id, IdentityHint(phone="+15550000000", email=" jamie@example.COM ")
        )

    assert recipient is not None
    assert recipient.id == world.recipient_id


@pytest.mark.asyncio
async def test_ambiguous_phone_picks_earliest_recipient(session_factory, build_world) -> None:
    world = await build_world()

    async with session_factory() as session:
        session.add(
            Recipient(
                audience_id=world.audience_id,
                first_name="Duplicate",
                phone="+15555550123",
                redemption_code="MAIL-DUPLICATE",
            )
        )
        await session.commit()

    async with session_factory() as session:
        matcher = RecipientMatcher(session)
        first = await matcher.match(world.campaign_id, IdentityHint(phone="5555550123"))
        second = await matcher.match(world.campaign_id, IdentityHint(phone="5555550123"))

    assert first is not None and second is not None
    assert first.id == second.id


@pytest.mark.asyncio
async def test_no_identity_means_no_match(session_factory, build_world) -> None:
    world = await build_world()

    async with session_factory() as session:
        matcher = RecipientMatcher(session)
        assert IdentityHint().is_empty
        assert await matcher.match(world.campaign_id, IdentityHint()) is None
        assert await matcher.match(world.campaign_id, IdentityHint(phone="+19998887777")) is None
