"""billing core tables

Revision ID: 0001_billing_core
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa

revision = "0001_billing_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade():
    op.create_table(
        "resellers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(length=64), nullable=False),
        sa.Column("type", sa.Enum("plan", "traffic", "wallet", name="resellertype"), nullable=False, server_default="wallet"),
        sa.Column(
            "status",
            sa.Enum(
                "active",
                "disabled",
                "suspended",
                "suspended_wallet",
                "suspended_traffic",
                "suspended_other",
                name="resellerstatus",
            ),
            nullable=False,
            server_default="active",
        ),
        sa.Column("wallet_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("wallet_price_per_gb", sa.Integer(), nullable=True),
        sa.Column("traffic_total_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("traffic_used_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("admin_forgiven_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("window_starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("window_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        *_timestamps(),
    )
    op.create_index("ix_resellers_username", "resellers", ["username"], unique=True)

    op.create_table(
        "panels",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("panel_type", sa.Enum("marzban", "marzneshin", "xui", "eylandoo", name="paneltype"), nullable=False),
        sa.Column("base_url", sa.String(length=255), nullable=False),
        sa.Column("credentials", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )

    op.create_table(
        "reseller_configs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reseller_id", sa.Integer(), sa.ForeignKey("resellers.id"), nullable=False),
        sa.Column("panel_id", sa.Integer(), sa.ForeignKey("panels.id"), nullable=True),
        sa.Column("panel_user_id", sa.String(length=128), nullable=True),
        sa.Column("external_username", sa.String(length=128), nullable=False),
        sa.Column("usage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("traffic_limit_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status",
            sa.Enum("active", "disabled", "expired", "deleted", name="configstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("disabled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        *_timestamps(),
    )
    op.create_index("ix_reseller_configs_reseller_id", "reseller_configs", ["reseller_id"])
    op.create_index("ix_reseller_configs_panel_id", "reseller_configs", ["panel_id"])
    op.create_index("ix_reseller_configs_status", "reseller_configs", ["status"])

    op.create_table(
        "reseller_config_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reseller_config_id", sa.Integer(), sa.ForeignKey("reseller_configs.id"), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        *_timestamps(),
    )
    op.create_index("ix_reseller_config_events_reseller_config_id", "reseller_config_events", ["reseller_config_id"])

    op.create_table(
        "billing_ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reseller_id", sa.Integer(), sa.ForeignKey("resellers.id"), nullable=False),
        sa.Column("reseller_config_id", sa.Integer(), sa.ForeignKey("reseller_configs.id"), nullable=True),
        sa.Column(
            "action_type",
            sa.Enum("reset_traffic", "delete_config", "hourly_charge", "wallet_credit", name="ledgeraction"),
            nullable=False,
        ),
        sa.Column("charged_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("amount_charged", sa.BigInteger(), nullable=False),
        sa.Column("price_per_gb", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("wallet_balance_before", sa.BigInteger(), nullable=False),
        sa.Column("wallet_balance_after", sa.BigInteger(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        *_timestamps(),
    )
    op.create_index("ix_billing_ledger_entries_reseller_id", "billing_ledger_entries", ["reseller_id"])
    op.create_index("ix_billing_ledger_entries_reseller_config_id", "billing_ledger_entries", ["reseller_config_id"])

    op.create_table(
        "reseller_usage_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reseller_id", sa.Integer(), sa.ForeignKey("resellers.id"), nullable=False),
        sa.Column("total_bytes", sa.BigInteger(), nullable=False),
        sa.Column("measured_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        *_timestamps(),
    )
    op.create_index("ix_reseller_usage_snapshots_reseller_id", "reseller_usage_snapshots", ["reseller_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reseller_id", sa.Integer(), sa.ForeignKey("resellers.id"), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("type", sa.Enum("deposit", "purchase", "refund", name="transactiontype"), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "failed", name="transactionstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("gateway", sa.String(length=32), nullable=True),
        sa.Column("gateway_reference", sa.String(length=128), nullable=True),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("callback_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        *_timestamps(),
    )
    op.create_index("ix_transactions_reseller_id", "transactions", ["reseller_id"])
    op.create_index("ix_transactions_status", "transactions", ["status"])
    op.create_index("ix_transactions_gateway", "transactions", ["gateway"])
    op.create_index("ix_transactions_gateway_reference", "transactions", ["gateway_reference"])

    op.create_table(
        "app_settings",
        sa.Column("key", sa.String(length=64), nullable=False),
        sa.Column("value", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade():
    op.drop_table("app_settings")
    op.drop_table("transactions")
    op.drop_table("reseller_usage_snapshots")
    op.drop_table("billing_ledger_entries")
    op.drop_table("reseller_config_events")
    op.drop_table("reseller_configs")
    op.drop_table("panels")
    op.drop_table("resellers")
    for name in ("transactionstatus", "transactiontype", "ledgeraction", "configstatus", "paneltype", "resellerstatus", "resellertype"):
        sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)
