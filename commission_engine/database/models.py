"""SQLAlchemy database models for the commission settlement engine.

The ledger tables (``payment_attributions`` and the withdrawal transitions in
``withdrawal_requests``) are the event log. ``creator_profiles`` balances,
``cmo_payouts`` and ``discount_codes.paid_conversions`` are materialized views
over that log and can always be rebuilt by replay.
"""
import uuid
from datetime import date, datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer, "sqlite")
JSONType = JSON().with_variant(JSONB, "postgresql")

WITHDRAWAL_STATUSES = ("pending", "approved", "paid", "rejected")
CMO_PAYOUT_STATUSES = ("pending", "eligible", "paid")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentAttribution(Base):
    """
    Append-only ledger of confirmed payments.

    One row per external order identifier, ever. Rows are inserted once at
    payment confirmation and never updated or deleted; ``id`` gives the replay
    order used by both the incremental roll-up and reconciliation.
    """

    __tablename__ = "payment_attributions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    payer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    creator_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    discount_code_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    attribution_source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    enrollment_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    original_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    final_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    commission_rate_bps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    commission_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    payment_month: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    tier: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_channel: Mapped[str] = mapped_column(String(20), nullable=False, default="card")
    payment_kind: Mapped[str] = mapped_column(String(20), nullable=False, default="new")
    counts_as_paid_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("final_amount_cents >= 0", name="non_negative_final_amount"),
        CheckConstraint(
            "final_amount_cents <= original_amount_cents", name="final_not_above_original"
        ),
        CheckConstraint("commission_cents >= 0", name="non_negative_commission"),
        CheckConstraint("payment_kind IN ('new', 'upgrade')", name="valid_payment_kind"),
        Index("idx_payment_attributions_creator_month", "creator_id", "payment_month"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentAttribution."""
        return (
            f"<PaymentAttribution(order_id={self.order_id}, creator_id={self.creator_id}, "
            f"final={self.final_amount_cents}, commission={self.commission_cents})>"
        )


class AppliedAttribution(Base):
    """
    Ledger rows already folded into the materialized views.

    Written in the same transaction as the folding, either by the second
    phase of a payment confirmation or by reconciliation, whichever commits
    first. The primary key makes the two mutually exclusive, so a ledger row
    is never counted twice.
    """

    __tablename__ = "applied_attributions"

    attribution_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    applied_by: Mapped[str] = mapped_column(String(20), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "applied_by IN ('payment', 'reconciliation')", name="valid_applied_by"
        ),
    )


class CreatorProfile(Base):
    """
    Referring creator with running totals.

    Counts and balances are only mutated as a side effect of a new ledger row
    or a withdrawal state transition, and are reset by reconciliation.
    """

    __tablename__ = "creator_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    cmo_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    referral_code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    lifetime_paid_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    monthly_paid_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    monthly_paid_users_month: Mapped[date | None] = mapped_column(Date, nullable=True)
    available_balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_withdrawn_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("available_balance_cents >= 0", name="non_negative_balance"),
    )

    def __repr__(self) -> str:
        """String representation of CreatorProfile."""
        return (
            f"<CreatorProfile(id={self.id}, code={self.referral_code}, "
            f"balance={self.available_balance_cents})>"
        )


class CMOProfile(Base):
    """Regional manager supervising a group of creators."""

    __tablename__ = "cmo_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    referral_code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )


class CMOPayout(Base):
    """
    Monthly CMO commission roll-up.

    Holds nothing that cannot be derived from the ledger and the settlement
    table; reconciliation deletes and regenerates every row.
    """

    __tablename__ = "cmo_payouts"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    cmo_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    payout_month: Mapped[date] = mapped_column(Date, nullable=False)
    paid_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gross_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    base_commission_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bonus_commission_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_commission_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    __table_args__ = (
        UniqueConstraint("cmo_id", "payout_month", name="uq_cmo_payout_month"),
        CheckConstraint(
            "status IN ('pending', 'eligible', 'paid')", name="valid_cmo_payout_status"
        ),
    )

    def __repr__(self) -> str:
        """String representation of CMOPayout."""
        return (
            f"<CMOPayout(cmo_id={self.cmo_id}, month={self.payout_month}, "
            f"total={self.total_commission_cents}, status={self.status})>"
        )


class CMOPayoutSettlement(Base):
    """Record that a CMO's monthly payout was paid out. Immutable once written."""

    __tablename__ = "cmo_payout_settlements"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    cmo_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    payout_month: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    paid_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    paid_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("cmo_id", "payout_month", name="uq_cmo_settlement_month"),
    )


class DiscountCode(Base):
    """Creator-owned discount code that also attributes the sale."""

    __tablename__ = "discount_codes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    creator_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    discount_bps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_conversions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class UserAttribution(Base):
    """Permanent payer -> creator mapping. First write wins; never updated."""

    __tablename__ = "user_attributions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    payer_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    creator_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    discount_code_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    referral_source: Mapped[str] = mapped_column(String(50), nullable=False)
    order_id: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )


class WithdrawalMethod(Base):
    """Payout destination registered by a creator."""

    __tablename__ = "withdrawal_methods"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    creator_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    method_type: Mapped[str] = mapped_column(String(50), nullable=False, default="bank")
    account_label: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )


class WithdrawalRequest(Base):
    """
    Creator withdrawal request.

    Advances only through the explicit state machine:
    pending -> approved -> paid, pending -> rejected.
    """

    __tablename__ = "withdrawal_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    creator_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    withdrawal_method_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    fee_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    net_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_withdrawal_amount"),
        CheckConstraint("net_amount_cents = amount_cents - fee_cents", name="net_matches_fee"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'paid', 'rejected')",
            name="valid_withdrawal_status",
        ),
        Index(
            "uq_withdrawal_one_pending_per_creator",
            "creator_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of WithdrawalRequest."""
        return (
            f"<WithdrawalRequest(id={self.id}, creator_id={self.creator_id}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class UserRole(Base):
    """Role grants used for privilege checks."""

    __tablename__ = "user_roles"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_role"),)


class AdminAction(Base):
    """Audit trail of privileged actions. Immutable once written."""

    __tablename__ = "admin_actions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    admin_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    action_type: Mapped[str] = mapped_column(String(100), nullable=False)
    target_type: Mapped[str] = mapped_column(String(100), nullable=False)
    target_id: Mapped[str] = mapped_column(String(255), nullable=False)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )


class InboxMessage(Base):
    """In-app message shown to a creator."""

    __tablename__ = "inbox_messages"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    recipient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    recipient_type: Mapped[str] = mapped_column(String(20), nullable=False, default="creator")
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    notification_type: Mapped[str] = mapped_column(String(20), nullable=False, default="info")
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )


class OutboxEvent(Base):
    """
    Outbox of operational alerts.

    Written after the core transaction commits and delivered asynchronously
    by the outbox publisher worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[str] = mapped_column(String(255), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )


class ReconciliationRun(Base):
    """Audit of each reconciliation execution."""

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    creators_processed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    creators_drifted: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payout_rows: Mapped[int | None] = mapped_column(Integer, nullable=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_reconciliation_status",
        ),
    )
