"""Create reward pipeline tables.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "20261018_01"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

# SQLAlchemy persists Python enum member names.
ENUMS: dict[str, tuple[str, ...]] = {
    "campaign_status": ("DRAFT", "ACTIVE", "PAUSED", "COMPLETED"),
    "campaign_budget_mode": ("SHARED", "ISOLATED"),
    "condition_trigger_type": ("CALL_COMPLETED", "CRM_EVENT", "TIME_DELAYED"),
    "sms_opt_in_status": ("PENDING", "OPTED_IN", "OPTED_OUT", "INVALID_RESPONSE"),
    "credit_account_type": ("CLIENT", "CAMPAIGN"),
    "credit_account_status": ("ACTIVE", "DEPLETED"),
    "credit_transaction_type": ("ALLOCATION", "REDEMPTION", "REFUND"),
    "gift_card_pool_type": ("INVENTORY", "API_CONFIG"),
    "gift_card_status": ("AVAILABLE", "CLAIMED", "DELIVERED", "FAILED"),
    "reward_source": ("INVENTORY", "API"),
    "gift_card_redemption_status": ("PENDING", "PROVISIONED", "VIEWED", "REDEEMED", "REJECTED"),
    "gift_card_delivery_status": ("PENDING", "SENT", "DELIVERED", "FAILED"),
    "pipeline_event_source": ("TELEPHONY", "CRM", "SMS", "SYSTEM"),
    "system_alert_severity": ("INFO", "WARNING", "CRITICAL"),
    "system_alert_type": ("PROVISIONING_FAILURE", "LOW_CREDIT_BALANCE", "LOW_INVENTORY"),
}


def _enum(name: str) -> sa.Enum:
    return sa.Enum(*ENUMS[name], name=name)


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "clients",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_table(
        "audiences",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", _uuid(), sa.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_index("ix_audiences_client_id", "audiences", ["client_id"])

    op.create_table(
        "gift_card_brands",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(updated=False),
    )

    op.create_table(
        "credit_accounts",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("account_type", _enum("credit_account_type"), nullable=False),
        sa.Column("owner_id", _uuid(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("total_allocated", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_used", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_remaining", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("status", _enum("credit_account_status"), nullable=False),
        sa.CheckConstraint("total_remaining >= 0", name="ck_credit_accounts_remaining_non_negative"),
        *_timestamps(),
    )
    op.create_index("ix_credit_accounts_owner_id", "credit_accounts", ["owner_id"])

    op.create_table(
        "campaigns",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", _uuid(), sa.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("audience_id", _uuid(), sa.ForeignKey("audiences.id", ondelete="SET NULL"), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", _enum("campaign_status"), nullable=False),
        sa.Column("budget_mode", _enum("campaign_budget_mode"), nullable=False),
        sa.Column(
            "credit_account_id",
            _uuid(),
            sa.ForeignKey("credit_accounts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("sms_template", sa.Text(), nullable=True),
        sa.Column("sms_opt_in_message", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_campaigns_client_id", "campaigns", ["client_id"])
    op.create_index("ix_campaigns_audience_id", "campaigns", ["audience_id"])

    op.create_table(
        "campaign_conditions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("campaign_id", _uuid(), sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False),
        sa.Column("condition_number", sa.Integer(), nullable=False),
        sa.Column("condition_name", sa.String(), nullable=True),
        sa.Column("trigger_type", _enum("condition_trigger_type"), nullable=False),
        sa.Column("time_delay_hours", sa.Numeric(8, 2), nullable=True),
        sa.Column("crm_event_name", sa.String(), nullable=True),
        sa.Column("brand_id", _uuid(), sa.ForeignKey("gift_card_brands.id", ondelete="SET NULL"), nullable=True),
        sa.Column("card_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("sms_template", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(updated=False),
        sa.UniqueConstraint("campaign_id", "condition_number", name="uq_campaign_condition_number"),
    )
    op.create_index("ix_campaign_conditions_campaign_id", "campaign_conditions", ["campaign_id"])

    op.create_table(
        "recipients",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("audience_id", _uuid(), sa.ForeignKey("audiences.id", ondelete="CASCADE"), nullable=False),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("phone", sa.String(length=20), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("redemption_code", sa.String(length=50), nullable=True),
        sa.Column("sms_opt_in_status", _enum("sms_opt_in_status"), nullable=False),
        sa.Column("sms_opt_in_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("opted_in_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("opted_out_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_recipients_audience_id", "recipients", ["audience_id"])
    op.create_index("ix_recipients_phone", "recipients", ["phone"])
    op.create_index("ix_recipients_email", "recipients", ["email"])
    op.create_index("ix_recipients_redemption_code", "recipients", ["redemption_code"], unique=True)

    op.create_table(
        "recipient_condition_status",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("recipient_id", _uuid(), sa.ForeignKey("recipients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("campaign_id", _uuid(), sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False),
        sa.Column("condition_number", sa.Integer(), nullable=False),
        sa.Column("is_met", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("met_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "recipient_id",
            "campaign_id",
            "condition_number",
            name="uq_recipient_condition_status",
        ),
    )
    op.create_index("ix_recipient_condition_status_recipient_id", "recipient_condition_status", ["recipient_id"])
    op.create_index("ix_recipient_condition_status_campaign_id", "recipient_condition_status", ["campaign_id"])

    op.create_table(
        "gift_card_pools",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", _uuid(), sa.ForeignKey("clients.id", ondelete="CASCADE"), nullable=True),
        sa.Column("brand_id", _uuid(), sa.ForeignKey("gift_card_brands.id", ondelete="CASCADE"), nullable=False),
        sa.Column("pool_name", sa.String(), nullable=True),
        sa.Column("card_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("pool_type", _enum("gift_card_pool_type"), nullable=False),
        sa.Column("cost_per_card", sa.Numeric(12, 2), nullable=True),
        sa.Column("available_cards", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cards", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("api_config", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint("available_cards >= 0", name="ck_gift_card_pools_available_non_negative"),
        *_timestamps(),
    )
    op.create_index("ix_gift_card_pools_client_id", "gift_card_pools", ["client_id"])
    op.create_index("ix_gift_card_pools_brand_id", "gift_card_pools", ["brand_id"])

    op.create_table(
        "gift_cards",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("pool_id", _uuid(), sa.ForeignKey("gift_card_pools.id", ondelete="CASCADE"), nullable=False),
        sa.Column("card_code", sa.String(), nullable=False),
        sa.Column("card_number", sa.String(), nullable=True),
        sa.Column("expiration_date", sa.Date(), nullable=True),
        sa.Column("status", _enum("gift_card_status"), nullable=False),
        sa.Column(
            "claimed_by_recipient_id",
            _uuid(),
            sa.ForeignKey("recipients.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_transaction_id", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_gift_cards_pool_id", "gift_cards", ["pool_id"])
    op.create_index("ix_gift_cards_status", "gift_cards", ["status"])

    op.create_table(
        "credit_transactions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "account_id",
            _uuid(),
            sa.ForeignKey("credit_accounts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("transaction_type", _enum("credit_transaction_type"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance_before", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(12, 2), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_credit_transactions_account_id", "credit_transactions", ["account_id"])

    op.create_table(
        "gift_card_redemptions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("campaign_id", _uuid(), sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False),
        sa.Column("recipient_id", _uuid(), sa.ForeignKey("recipients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("condition_number", sa.Integer(), nullable=True),
        sa.Column("redemption_code", sa.String(length=50), nullable=True),
        sa.Column("redemption_token", sa.String(length=64), nullable=False, unique=True),
        sa.Column("gift_card_id", _uuid(), sa.ForeignKey("gift_cards.id", ondelete="SET NULL"), nullable=True),
        sa.Column("amount_charged", sa.Numeric(12, 2), nullable=True),
        sa.Column(
            "account_charged_id",
            _uuid(),
            sa.ForeignKey("credit_accounts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("source", _enum("reward_source"), nullable=True),
        sa.Column("status", _enum("gift_card_redemption_status"), nullable=False),
        sa.Column("requester_ip", sa.String(length=64), nullable=True),
        sa.Column("requester_user_agent", sa.String(), nullable=True),
        sa.Column("rejection_reason", sa.String(), nullable=True),
        sa.Column("provisioning_lease", sa.String(length=32), nullable=True),
        sa.Column("provisioning_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provisioned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("viewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "campaign_id",
            "recipient_id",
            "condition_number",
            name="uq_redemption_campaign_recipient_condition",
        ),
    )
    op.create_index("ix_gift_card_redemptions_campaign_id", "gift_card_redemptions", ["campaign_id"])
    op.create_index("ix_gift_card_redemptions_recipient_id", "gift_card_redemptions", ["recipient_id"])
    op.create_index("ix_gift_card_redemptions_redemption_code", "gift_card_redemptions", ["redemption_code"])
    op.create_index(
        "uq_redemption_pending_unconditioned",
        "gift_card_redemptions",
        ["campaign_id", "recipient_id"],
        unique=True,
        postgresql_where=sa.text("condition_number IS NULL AND status = 'PENDING'"),
        sqlite_where=sa.text("condition_number IS NULL AND status = 'PENDING'"),
    )

    op.create_table(
        "gift_card_deliveries",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "redemption_id",
            _uuid(),
            sa.ForeignKey("gift_card_redemptions.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("recipient_id", _uuid(), sa.ForeignKey("recipients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("campaign_id", _uuid(), sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False),
        sa.Column("delivery_method", sa.String(length=16), nullable=False),
        sa.Column("destination", sa.String(), nullable=True),
        sa.Column("message_body", sa.String(), nullable=True),
        sa.Column("status", _enum("gift_card_delivery_status"), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=True),
        sa.Column("provider_message_id", sa.String(length=128), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_gift_card_deliveries_redemption_id", "gift_card_deliveries", ["redemption_id"])
    op.create_index("ix_gift_card_deliveries_recipient_id", "gift_card_deliveries", ["recipient_id"])
    op.create_index("ix_gift_card_deliveries_campaign_id", "gift_card_deliveries", ["campaign_id"])
    op.create_index(
        "ix_gift_card_deliveries_provider_message_id",
        "gift_card_deliveries",
        ["provider_message_id"],
    )

    op.create_table(
        "crm_integrations",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("campaign_id", _uuid(), sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("webhook_secret", sa.String(), nullable=True),
        sa.Column("event_mappings", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_crm_integrations_campaign_id", "crm_integrations", ["campaign_id"])

    op.create_table(
        "pipeline_events",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("source", _enum("pipeline_event_source"), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("raw_event_type", sa.String(length=128), nullable=True),
        sa.Column("campaign_id", _uuid(), sa.ForeignKey("campaigns.id", ondelete="SET NULL"), nullable=True),
        sa.Column("recipient_id", _uuid(), sa.ForeignKey("recipients.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "integration_id",
            _uuid(),
            sa.ForeignKey("crm_integrations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("raw_payload", sa.JSON(), nullable=False),
        sa.Column("signature_valid", sa.Boolean(), nullable=True),
        sa.Column("matched", sa.Boolean(), nullable=False),
        sa.Column("condition_triggered", sa.Boolean(), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_pipeline_events_campaign_id", "pipeline_events", ["campaign_id"])
    op.create_index("ix_pipeline_events_recipient_id", "pipeline_events", ["recipient_id"])
    op.create_index("ix_pipeline_events_integration_id", "pipeline_events", ["integration_id"])
    op.create_index("ix_pipeline_events_processed_created_at", "pipeline_events", ["processed", "created_at"])

    op.create_table(
        "system_alerts",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("severity", _enum("system_alert_severity"), nullable=False),
        sa.Column("alert_type", _enum("system_alert_type"), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_system_alerts_alert_type", "system_alerts", ["alert_type"])


def downgrade() -> None:
    for table in (
        "system_alerts",
        "pipeline_events",
        "crm_integrations",
        "gift_card_deliveries",
        "gift_card_redemptions",
        "credit_transactions",
        "gift_cards",
        "gift_card_pools",
        "recipient_condition_status",
        "recipients",
        "campaign_conditions",
        "campaigns",
        "credit_accounts",
        "gift_card_brands",
        "audiences",
        "clients",
    ):
        op.drop_table(table)

    conn = op.get_bind()
    for name in ENUMS:
        sa.Enum(name=name).drop(conn, checkfirst=True)
