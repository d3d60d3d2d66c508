"""Seed a demo client, campaign, and reward inventory into the API database."""

from __future__ import annotations

import asyncio
import os
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from giftflow_api.core.settings import settings
from giftflow_api.db.base import Base
from giftflow_api.models import (
    Audience,
    Campaign,
    CampaignBudgetMode,
    CampaignCondition,
    CampaignStatus,
    Client,
    ConditionTriggerType,
    CreditAccount,
    CreditAccountType,
    CreditTransaction,
    CreditTransactionType,
    GiftCard,
    GiftCardBrand,
    GiftCardPool,
    GiftCardPoolType,
    Recipient,
    SmsOptInStatus,
)

DEMO_CLIENT_NAME = "Demo Dental Group"
DEMO_BRAND_CODE = os.getenv("DEV_SEED_BRAND_CODE", "AMAZON")
DEMO_CARD_VALUE = Decimal(os.getenv("DEV_SEED_CARD_VALUE", "25"))
DEMO_CREDIT = Decimal(os.getenv("DEV_SEED_CREDIT", "100"))
DEMO_CARD_COUNT = int(os.getenv("DEV_SEED_CARD_COUNT", "3"))
DEMO_RECIPIENT_PHONE = os.getenv("DEV_SEED_RECIPIENT_PHONE", "+15555550123")


async def seed_campaign(session: AsyncSession) -> Campaign:
    existing = await session.scalar(select(Client).where(Client.name == DEMO_CLIENT_NAME))
    if existing is not None:
        campaign = await session.scalar(select(Campaign).where(Campaign.client_id == existing.id))
        if campaign is not None:
            return campaign

    client = existing or Client(name=DEMO_CLIENT_NAME)
    session.add(client)
    await session.flush()

    audience = Audience(client_id=client.id, name="Spring mailer")
    brand = await session.scalar(select(GiftCardBrand).where(GiftCardBrand.code == DEMO_BRAND_CODE))
    if brand is None:
        brand = GiftCardBrand(name=DEMO_BRAND_CODE.title(), code=DEMO_BRAND_CODE)
    session.add_all([audience, brand])
    await session.flush()

    account = CreditAccount(
        account_type=CreditAccountType.CLIENT,
        owner_id=client.id,
        name=f"{DEMO_CLIENT_NAME} credit",
        total_allocated=DEMO_CREDIT,
        total_used=Decimal("0"),
        total_remaining=DEMO_CREDIT,
    )
    session.add(account)
    await session.flush()
    session.add(
        CreditTransaction(
            account_id=account.id,
            transaction_type=CreditTransactionType.ALLOCATION,
            amount=DEMO_CREDIT,
            balance_before=Decimal("0"),
            balance_after=DEMO_CREDIT,
            metadata_json={"source": "seed"},
        )
    )

    campaign = Campaign(
        client_id=client.id,
        audience_id=audience.id,
        name="Call-in reward",
        status=CampaignStatus.ACTIVE,
        budget_mode=CampaignBudgetMode.SHARED,
    )
    session.add(campaign)
    await session.flush()

    session.add_all(
        [
            CampaignCondition(
                campaign_id=campaign.id,
                condition_number=1,
                condition_name="Qualified call",
                trigger_type=ConditionTriggerType.CALL_COMPLETED,
                brand_id=brand.id,
                card_value=DEMO_CARD_VALUE,
            ),
            CampaignCondition(
                campaign_id=campaign.id,
                condition_number=2,
                condition_name="Follow-up after a day",
                trigger_type=ConditionTriggerType.TIME_DELAYED,
                time_delay_hours=Decimal("24"),
                brand_id=brand.id,
                card_value=DEMO_CARD_VALUE,
            ),
        ]
    )

    pool = GiftCardPool(
        client_id=client.id,
        brand_id=brand.id,
        pool_name=f"{brand.name} ${DEMO_CARD_VALUE}",
        card_value=DEMO_CARD_VALUE,
        pool_type=GiftCardPoolType.INVENTORY,
        cost_per_card=DEMO_CARD_VALUE,
        available_cards=DEMO_CARD_COUNT,
        total_cards=DEMO_CARD_COUNT,
    )
    session.add(pool)
    await session.flush()
    session.add_all(
        [GiftCard(pool_id=pool.id, card_code=f"DEMO-{index:04d}") for index in range(1, DEMO_CARD_COUNT + 1)]
    )

    session.add(
        Recipient(
            audience_id=audience.id,
            first_name="Jamie",
            last_name="Rivera",
            phone=DEMO_RECIPIENT_PHONE,
            redemption_code="DEMO-CODE-0001",
            sms_opt_in_status=SmsOptInStatus.OPTED_IN,
        )
    )
    await session.commit()
    return campaign


async def main() -> None:
    engine = create_async_engine(settings.database_url, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        if settings.database_url.startswith("sqlite"):
            async with engine.begin() as connection:
                await connection.run_sync(Base.metadata.create_all)
        async with session_factory() as session:
            campaign = await seed_campaign(session)
        print(f"Demo campaign ready: {campaign.id}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
