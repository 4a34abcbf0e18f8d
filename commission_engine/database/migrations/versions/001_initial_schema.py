"""Initial commission settlement schema

Revision ID: 001
Revises:
Create Date: 2024-01-15 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=None if nullable else sa.text("now()"),
    )


def upgrade() -> None:
    """Upgrade database schema."""
    # Payment ledger (append-only)
    op.create_table(
        "payment_attributions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("order_id", sa.String(length=255), nullable=False),
        sa.Column("payer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("creator_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("discount_code_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("attribution_source", sa.String(length=50), nullable=True),
        sa.Column("enrollment_ref", sa.String(length=255), nullable=True),
        sa.Column("original_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("discount_cents", sa.BigInteger(), nullable=False),
        sa.Column("final_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("commission_rate_bps", sa.Integer(), nullable=False),
        sa.Column("commission_cents", sa.BigInteger(), nullable=False),
        sa.Column("payment_month", sa.Date(), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tier", sa.String(length=50), nullable=True),
        sa.Column("payment_channel", sa.String(length=20), nullable=False),
        sa.Column("payment_kind", sa.String(length=20), nullable=False),
        sa.Column("counts_as_paid_user", sa.Boolean(), nullable=False),
        _timestamp("recorded_at"),
        sa.CheckConstraint("final_amount_cents >= 0", name="non_negative_final_amount"),
        sa.CheckConstraint(
            "final_amount_cents <= original_amount_cents", name="final_not_above_original"
        ),
        sa.CheckConstraint("commission_cents >= 0", name="non_negative_commission"),
        sa.CheckConstraint("payment_kind IN ('new', 'upgrade')", name="valid_payment_kind"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id"),
    )
    op.create_index(
        op.f("ix_payment_attributions_payer_id"), "payment_attributions", ["payer_id"]
    )
    op.create_index(
        op.f("ix_payment_attributions_creator_id"), "payment_attributions", ["creator_id"]
    )
    op.create_index(
        op.f("ix_payment_attributions_payment_month"), "payment_attributions", ["payment_month"]
    )
    op.create_index(
        "idx_payment_attributions_creator_month",
        "payment_attributions",
        ["creator_id", "payment_month"],
    )

    op.create_table(
        "creator_profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("cmo_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("referral_code", sa.String(length=64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("lifetime_paid_users", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("monthly_paid_users", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("monthly_paid_users_month", sa.Date(), nullable=True),
        sa.Column("available_balance_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_withdrawn_cents", sa.BigInteger(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("available_balance_cents >= 0", name="non_negative_balance"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
        sa.UniqueConstraint("referral_code"),
    )
    op.create_index(op.f("ix_creator_profiles_cmo_id"), "creator_profiles", ["cmo_id"])

    op.create_table(
        "cmo_profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("referral_code", sa.String(length=64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
        sa.UniqueConstraint("referral_code"),
    )

    op.create_table(
        "cmo_payouts",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("cmo_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("payout_month", sa.Date(), nullable=False),
        sa.Column("paid_users", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("gross_amount_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("base_commission_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("bonus_commission_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_commission_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.CheckConstraint(
            "status IN ('pending', 'eligible', 'paid')", name="valid_cmo_payout_status"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("cmo_id", "payout_month", name="uq_cmo_payout_month"),
    )

    op.create_table(
        "cmo_payout_settlements",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("cmo_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("payout_month", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("paid_by", postgresql.UUID(as_uuid=True), nullable=False),
        _timestamp("paid_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("cmo_id", "payout_month", name="uq_cmo_settlement_month"),
    )

    op.create_table(
        "discount_codes",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("creator_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("discount_bps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paid_conversions", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code"),
    )
    op.create_index(op.f("ix_discount_codes_creator_id"), "discount_codes", ["creator_id"])

    op.create_table(
        "user_attributions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("payer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("creator_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("discount_code_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("referral_source", sa.String(length=50), nullable=False),
        sa.Column("order_id", sa.String(length=255), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payer_id"),
    )
    op.create_index(op.f("ix_user_attributions_creator_id"), "user_attributions", ["creator_id"])

    op.create_table(
        "withdrawal_methods",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("creator_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("method_type", sa.String(length=50), nullable=False, server_default="bank"),
        sa.Column("account_label", sa.String(length=255), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_withdrawal_methods_creator_id"), "withdrawal_methods", ["creator_id"]
    )

    op.create_table(
        "withdrawal_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("creator_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("withdrawal_method_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("fee_bps", sa.Integer(), nullable=False),
        sa.Column("fee_cents", sa.BigInteger(), nullable=False),
        sa.Column("net_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("reviewed_by", postgresql.UUID(as_uuid=True), nullable=True),
        _timestamp("reviewed_at", nullable=True),
        sa.Column("paid_by", postgresql.UUID(as_uuid=True), nullable=True),
        _timestamp("paid_at", nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("amount_cents > 0", name="positive_withdrawal_amount"),
        sa.CheckConstraint("net_amount_cents = amount_cents - fee_cents", name="net_matches_fee"),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'paid', 'rejected')",
            name="valid_withdrawal_status",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(
        op.f("ix_withdrawal_requests_creator_id"), "withdrawal_requests", ["creator_id"]
    )
    # At most one pending request per creator
    op.create_index(
        "uq_withdrawal_one_pending_per_creator",
        "withdrawal_requests",
        ["creator_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "user_roles",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("role", sa.String(length=50), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "role", name="uq_user_role"),
    )
    op.create_index(op.f("ix_user_roles_user_id"), "user_roles", ["user_id"])

    op.create_table(
        "admin_actions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("admin_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action_type", sa.String(length=100), nullable=False),
        sa.Column("target_type", sa.String(length=100), nullable=False),
        sa.Column("target_id", sa.String(length=255), nullable=False),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_admin_actions_admin_id"), "admin_actions", ["admin_id"])

    op.create_table(
        "inbox_messages",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("recipient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("recipient_type", sa.String(length=20), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("notification_type", sa.String(length=20), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_inbox_messages_recipient_id"), "inbox_messages", ["recipient_id"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("aggregate_id", sa.String(length=255), nullable=False),
        sa.Column("aggregate_type", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("published", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("published_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_outbox_aggregate", "outbox_events", ["aggregate_id", "aggregate_type"]
    )
    op.create_index(op.f("ix_outbox_events_published"), "outbox_events", ["published"])

    op.create_table(
        "reconciliation_runs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("creators_processed", sa.Integer(), nullable=True),
        sa.Column("creators_drifted", sa.Integer(), nullable=True),
        sa.Column("payout_rows", sa.Integer(), nullable=True),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_reconciliation_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("reconciliation_runs")
    op.drop_index(op.f("ix_outbox_events_published"), table_name="outbox_events")
    op.drop_index("idx_outbox_aggregate", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index(op.f("ix_inbox_messages_recipient_id"), table_name="inbox_messages")
    op.drop_table("inbox_messages")
    op.drop_index(op.f("ix_admin_actions_admin_id"), table_name="admin_actions")
    op.drop_table("admin_actions")
    op.drop_index(op.f("ix_user_roles_user_id"), table_name="user_roles")
    op.drop_table("user_roles")
    op.drop_index("uq_withdrawal_one_pending_per_creator", table_name="withdrawal_requests")
    op.drop_index(op.f("ix_withdrawal_requests_creator_id"), table_name="withdrawal_requests")
    op.drop_table("withdrawal_requests")
    op.drop_index(op.f("ix_withdrawal_methods_creator_id"), table_name="withdrawal_methods")
    op.drop_table("withdrawal_methods")
    op.drop_index(op.f("ix_user_attributions_creator_id"), table_name="user_attributions")
    op.drop_table("user_attributions")
    op.drop_index(op.f("ix_discount_codes_creator_id"), table_name="discount_codes")
    op.drop_table("discount_codes")
    op.drop_table("cmo_payout_settlements")
    op.drop_table("cmo_payouts")
    op.drop_table("cmo_profiles")
    op.drop_index(op.f("ix_creator_profiles_cmo_id"), table_name="creator_profiles")
    op.drop_table("creator_profiles")
    op.drop_index("idx_payment_attributions_creator_month", table_name="payment_attributions")
    op.drop_index(op.f("ix_payment_attributions_payment_month"), table_name="payment_attributions")
    op.drop_index(op.f("ix_payment_attributions_creator_id"), table_name="payment_attributions")
    op.drop_index(op.f("ix_payment_attributions_payer_id"), table_name="payment_attributions")
    op.drop_table("payment_attributions")
