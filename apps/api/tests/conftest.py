import sys
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from giftflow_api.api.dependencies.services import get_sms_backend  # noqa: E402
from giftflow_api.app import create_app  # noqa: E402
from giftflow_api.db.base import Base  # noqa: E402
from giftflow_api.db.session import get_session  # noqa: E402
from giftflow_api.models import (  # noqa: E402
    Audience,
    Campaign,
    CampaignBudgetMode,
    CampaignCondition,
    CampaignStatus,
    Client,
    ConditionTriggerType,
    CreditAccount,
    CreditAccountType,
    GiftCard,
    GiftCardBrand,
    GiftCardPool,
    GiftCardPoolType,
    Recipient,
    SmsOptInStatus,
)
from giftflow_api.observability.rewards import get_reward_store  # noqa: E402
from giftflow_api.services.delivery import InMemorySMSBackend  # noqa: E402


@dataclass
class RewardWorld:
    client_id: UUID
    audience_id: UUID
    campaign_id: UUID
    account_id: UUID
    brand_id: UUID
    pool_id: UUID
    recipient_id: UUID
    redemption_code: str
    phone: str


async def _create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    await _create_schema(engine)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed database so separate sessions use separate connections."""

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'giftflow.db'}",
        future=True,
        connect_args={"timeout": 30},
    )
    await _create_schema(engine)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture(autouse=True)
def reset_reward_store():
    get_reward_store().reset()
    yield
    get_reward_store().reset()


@pytest.fixture
def sms_backend() -> InMemorySMSBackend:
    return InMemorySMSBackend()


@pytest_asyncio.fixture
async def app_with_db(session_factory, sms_backend):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_sms_backend] = lambda: sms_backend

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


def _default_conditions():
    return [{"number": 1, "trigger": ConditionTriggerType.CALL_COMPLETED}]


async def seed_reward_world(
    factory,
    *,
    balance: str = "100",
    cards: int = 3,
    card_value: str = "25",
    cost_per_card: str | None = None,
    conditions=None,
    opt_in: SmsOptInStatus = SmsOptInStatus.OPTED_IN,
    phone: str = "+15555550123",
    email: str | None = "jamie@example.com",
    first_name: str = "Jamie",
    sms_template: str | None = None,
    budget_mode: CampaignBudgetMode = CampaignBudgetMode.SHARED,
) -> RewardWorld:
    """Client, audience, funded account, campaign, conditions, inventory and one recipient."""

    value = Decimal(card_value)
    suffix = uuid4().hex[:8].upper()
    async with factory() as session:
        client = Client(name=f"Acme Dental {suffix}")
        session.add(client)
        await session.flush()

        audience = Audience(client_id=client.id, name="Spring mailer")
        brand = GiftCardBrand(name="Amazon", code=f"AMAZON-{suffix}")
        session.add_all([audience, brand])
        await session.flush()

        account = CreditAccount(
            account_type=(
                CreditAccountType.CAMPAIGN if budget_mode == CampaignBudgetMode.ISOLATED else CreditAccountType.CLIENT
            ),
            owner_id=client.id,
            total_allocated=Decimal(balance),
            total_used=Decimal("0"),
            total_remaining=Decimal(balance),
        )
        session.add(account)
        await session.flush()

        campaign = Campaign(
            client_id=client.id,
            audience_id=audience.id,
            name="Spring reward",
            status=CampaignStatus.ACTIVE,
            budget_mode=budget_mode,
            credit_account_id=account.id if budget_mode == CampaignBudgetMode.ISOLATED else None,
            sms_template=sms_template,
        )
        session.add(campaign)
        await session.flush()
        if budget_mode == CampaignBudgetMode.ISOLATED:
            account.owner_id = campaign.id

        for condition in conditions if conditions is not None else _default_conditions():
            rewarded = condition.get("reward", True)
            session.add(
                CampaignCondition(
                    campaign_id=campaign.id,
                    condition_number=condition["number"],
                    trigger_type=condition["trigger"],
                    crm_event_name=condition.get("crm_event_name"),
                    time_delay_hours=condition.get("delay_hours"),
                    brand_id=brand.id if rewarded else None,
                    card_value=value if rewarded else None,
                    sms_template=condition.get("sms_template"),
                )
            )

        pool = GiftCardPool(
            client_id=client.id,
            brand_id=brand.id,
            pool_name=f"Amazon ${card_value}",
            card_value=value,
            pool_type=GiftCardPoolType.INVENTORY,
            cost_per_card=Decimal(cost_per_card) if cost_per_card else value,
            available_cards=cards,
            total_cards=cards,
        )
        session.add(pool)
        await session.flush()
        session.add_all([GiftCard(pool_id=pool.id, card_code=f"CARD-{suffix}-{index}") for index in range(cards)])

        redemption_code = f"MAIL-{suffix}"
        recipient = Recipient(
            audience_id=audience.id,
            first_name=first_name,
            last_name="Rivera",
            phone=phone,
            email=email,
            redemption_code=redemption_code,
            sms_opt_in_status=opt_in,
        )
        session.add(recipient)
        await session.commit()

        return RewardWorld(
            client_id=client.id,
            audience_id=audience.id,
            campaign_id=campaign.id,
            account_id=account.id,
            brand_id=brand.id,
            pool_id=pool.id,
            recipient_id=recipient.id,
            redemption_code=redemption_code,
            phone=recipient.phone,
        )


@pytest.fixture
def build_world(session_factory):
    async def _build(**overrides) -> RewardWorld:
        return await seed_reward_world(session_factory, **overrides)

    return _build


@pytest.fixture
def build_file_world(file_session_factory):
    async def _build(**overrides) -> RewardWorld:
        return await seed_reward_world(file_session_factory, **overrides)

    return _build
