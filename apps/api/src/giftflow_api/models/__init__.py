"""SQLAlchemy models package."""

# Import all models
from .campaign import (  # noqa: F401
    Audience,
    Campaign,
    CampaignBudgetMode,
    CampaignCondition,
    CampaignStatus,
    Client,
    ConditionTriggerType,
    RecipientConditionStatus,
)
from .credit import (  # noqa: F401
    CreditAccount,
    CreditAccountStatus,
    CreditAccountType,
    CreditTransaction,
    CreditTransactionType,
)
from .gift_card import (  # noqa: F401
    GiftCard,
    GiftCardBrand,
    GiftCardPool,
    GiftCardPoolType,
    GiftCardStatus,
)
from .pipeline_event import CrmIntegration, EventSource, PipelineEvent  # noqa: F401
from .recipient import Recipient, SmsOptInStatus  # noqa: F401
from .redemption import (  # noqa: F401
    DeliveryStatus,
    GiftCardDelivery,
    GiftCardRedemption,
    RedemptionStatus,
    RewardSource,
)
from .system_alert import AlertSeverity, AlertType, SystemAlert  # noqa: F401
