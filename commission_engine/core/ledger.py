"""
Attribution Ledger - append-only record of confirmed payments.

The ledger is the event log of an event-sourced design: creator balances,
discount-code conversions, user attributions and CMO payouts are
materialized views over it.

Recording happens in two strictly ordered phases:
1. Insert the ledger row and commit. The unique index on ``order_id`` is the
   atomic existence guard; a duplicate returns the row that won.
2. In one separate transaction, apply the derived aggregates. A failure here
   is rolled back, logged and counted, and left for reconciliation; the
   ledger row stays. The phase claims the row in ``applied_attributions``
   after locking the creator row, so a reconciliation that already counted
   the row wins and the phase becomes a no-op.
"""
import uuid
from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.core.balances import credit_commission
from commission_engine.core.commission import CommissionPolicy
from commission_engine.core.errors import PersistenceError, ValidationError
from commission_engine.core.notifications import Notification, Notifier, format_lkr
from commission_engine.core.periods import month_start, utcnow
from commission_engine.core.rollup import CMORollup
from commission_engine.database.models import (
    AppliedAttribution,
    CreatorProfile,
    DiscountCode,
    PaymentAttribution,
    UserAttribution,
)
from commission_engine.database.upsert import insert_for
from commission_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PAYMENT_KINDS = ("new", "upgrade")
PAYMENT_CHANNELS = ("card", "bank")


@dataclass(frozen=True)
class ReferralHint:
    """Attribution hints carried by the checkout."""

    referral_code: Optional[str] = None
    discount_code: Optional[str] = None


@dataclass
class AttributionResult:
    """Outcome of recording a payment."""

    order_id: str
    attribution_id: int
    creator_id: Optional[uuid.UUID]
    discount_code_id: Optional[uuid.UUID]
    attribution_source: Optional[str]
    original_amount_cents: int
    discount_cents: int
    final_amount_cents: int
    commission_rate_bps: int
    commission_cents: int
    payment_month: date
    payment_kind: str
    counts_as_paid_user: bool
    idempotent_replay: bool = False
    aggregates_applied: Optional[bool] = None

    @classmethod
    def from_row(
        cls,
        row: PaymentAttribution,
        idempotent_replay: bool = False,
        aggregates_applied: Optional[bool] = None,
    ) -> "AttributionResult":
        return cls(
            order_id=row.order_id,
            attribution_id=row.id,
            creator_id=row.creator_id,
            discount_code_id=row.discount_code_id,
            attribution_source=row.attribution_source,
            original_amount_cents=row.original_amount_cents,
            discount_cents=row.discount_cents,
            final_amount_cents=row.final_amount_cents,
            commission_rate_bps=row.commission_rate_bps,
            commission_cents=row.commission_cents,
            payment_month=row.payment_month,
            payment_kind=row.payment_kind,
            counts_as_paid_user=row.counts_as_paid_user,
            idempotent_replay=idempotent_replay,
            aggregates_applied=aggregates_applied,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Referrer:
    """Creator a payment is attributed to, and how."""

    creator_id: uuid.UUID
    creator_user_id: uuid.UUID
    cmo_id: Optional[uuid.UUID]
    lifetime_paid_users: int
    source: str
    discount_code_id: Optional[uuid.UUID] = None


class AttributionLedger:
    """
    Records confirmed payments exactly once and applies their effects.

    Safe under duplicate and concurrent confirmations of the same order.
    """

    def __init__(
        self,
        policy: Optional[CommissionPolicy] = None,
        rollup: Optional[CMORollup] = None,
        notifier: Optional[Notifier] = None,
    ):
        """
        Initialize the ledger.

        Args:
            policy: Commission tiers
            rollup: CMO roll-up applied in the aggregate phase
            notifier: Best-effort notifier
        """
        self.policy = policy or CommissionPolicy.from_settings()
        self.notifier = notifier or Notifier()
        self.rollup = rollup or CMORollup(policy=self.policy, notifier=self.notifier)

    @staticmethod
    def _validate(
        order_id: str,
        original_amount_cents: int,
        final_amount_cents: int,
        payment_kind: str,
        payment_channel: str,
    ) -> None:
        """
        Validate a payment confirmation.

        Raises:
            ValidationError: If validation fails
        """
        if not order_id or not order_id.strip():
            raise ValidationError("Order ID is required")

        if final_amount_cents < 0:
            raise ValidationError("Final amount cannot be negative")

        if final_amount_cents > original_amount_cents:
            raise ValidationError(
                "Final amount cannot exceed original amount",
                {"original": original_amount_cents, "final": final_amount_cents},
            )

        if payment_kind not in PAYMENT_KINDS:
            raise ValidationError(f"Payment kind must be one of {PAYMENT_KINDS}")

        if payment_channel not in PAYMENT_CHANNELS:
            raise ValidationError(f"Payment channel must be one of {PAYMENT_CHANNELS}")

    @staticmethod
    async def _fetch(db: AsyncSession, order_id: str) -> Optional[PaymentAttribution]:
        result = await db.execute(
            select(PaymentAttribution).where(PaymentAttribution.order_id == order_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _load_creator(db: AsyncSession, *criteria: Any) -> Optional[CreatorProfile]:
        result = await db.execute(
            select(CreatorProfile)
            .where(CreatorProfile.is_active.is_(True), *criteria)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _resolve_referrer(
        self,
        db: AsyncSession,
        payer_id: uuid.UUID,
        hint: ReferralHint,
        payment_kind: str,
    ) -> Optional[Referrer]:
        """
        Find the creator to credit.

        New purchases: referral code first, then an active discount code.
        Upgrades: the payer's permanent attribution; hints are ignored.
        """
        if payment_kind == "upgrade":
            attribution = await db.scalar(
                select(UserAttribution).where(UserAttribution.payer_id == payer_id)
            )
            if attribution is None:
                return None
            creator = await self._load_creator(db, CreatorProfile.id == attribution.creator_id)
            if creator is None:
                return None
            return Referrer(
                creator_id=creator.id,
                creator_user_id=creator.user_id,
                cmo_id=creator.cmo_id,
                lifetime_paid_users=creator.lifetime_paid_users,
                source="user_attribution",
            )

        if hint.referral_code and hint.referral_code.strip():
            creator = await self._load_creator(
                db, CreatorProfile.referral_code == hint.referral_code.strip().upper()
            )
            if creator is not None:
                return Referrer(
                    creator_id=creator.id,
                    creator_user_id=creator.user_id,
                    cmo_id=creator.cmo_id,
                    lifetime_paid_users=creator.lifetime_paid_users,
                    source="referral_code",
                )

        if hint.discount_code and hint.discount_code.strip():
            code = await db.scalar(
                select(DiscountCode).where(
                    DiscountCode.code == hint.discount_code.strip().upper(),
                    DiscountCode.is_active.is_(True),
                )
            )
            if code is not None:
                creator = await self._load_creator(db, CreatorProfile.id == code.creator_id)
                if creator is not None:
                    return Referrer(
                        creator_id=creator.id,
                        creator_user_id=creator.user_id,
                        cmo_id=creator.cmo_id,
                        lifetime_paid_users=creator.lifetime_paid_users,
                        source="discount_code",
                        discount_code_id=code.id,
                    )

        return None

    async def _apply_aggregates(
        self,
        db: AsyncSession,
        row: PaymentAttribution,
        referrer: Referrer,
    ) -> bool:
        """
        Second phase: update every view derived from the new ledger row.

        The credit runs first so the creator row is locked before the claim;
        reconciliation takes the same locks in the same order.

        Returns:
            bool: False if reconciliation already folded the row in; the
            caller rolls back
        """
        await credit_commission(
            db,
            referrer.creator_id,
            row.commission_cents,
            row.counts_as_paid_user,
            row.payment_month,
        )
        claim = insert_for(db, AppliedAttribution).values(
            attribution_id=row.id, applied_by="payment"
        )
        claimed = await db.execute(
            claim.on_conflict_do_nothing(index_elements=["attribution_id"])
        )
        if claimed.rowcount == 0:
            return False

        if row.payment_kind == "new":
            stmt = insert_for(db, UserAttribution).values(
                payer_id=row.payer_id,
                creator_id=referrer.creator_id,
                discount_code_id=referrer.discount_code_id,
                referral_source=referrer.source,
                order_id=row.order_id,
            )
            await db.execute(stmt.on_conflict_do_nothing(index_elements=["payer_id"]))

        if referrer.discount_code_id is not None:
            await db.execute(
                update(DiscountCode)
                .where(DiscountCode.id == referrer.discount_code_id)
                .values(
                    usage_count=DiscountCode.usage_count + 1,
                    paid_conversions=DiscountCode.paid_conversions
                    + (1 if row.counts_as_paid_user else 0),
                )
                .execution_options(synchronize_session=False)
            )

        if referrer.cmo_id is not None:
            await self.rollup.apply_event(db, row, referrer.cmo_id)
        return True

    async def record_payment(
        self,
        db: AsyncSession,
        order_id: str,
        payer_id: uuid.UUID,
        enrollment_ref: Optional[str],
        original_amount_cents: int,
        final_amount_cents: int,
        referral_hint: Optional[ReferralHint] = None,
        *,
        tier: Optional[str] = None,
        payment_channel: str = "card",
        payment_kind: str = "new",
        paid_at: Optional[datetime] = None,
    ) -> AttributionResult:
        """
        Record a confirmed payment exactly once.

        Args:
            db: Database session
            order_id: External order identifier (idempotency key)
            payer_id: Paying user
            enrollment_ref: Enrollment the payment is for
            original_amount_cents: Price before discount
            final_amount_cents: Amount actually paid
            referral_hint: Referral / discount codes from checkout
            tier: Purchased tier
            payment_channel: card or bank
            payment_kind: new purchase or upgrade
            paid_at: Confirmation time (defaults to now)

        Returns:
            AttributionResult: the recorded row; ``idempotent_replay`` is set
            when the order was already recorded

        Raises:
            ValidationError: If the confirmation is invalid
            PersistenceError: If the ledger row could not be written
        """
        self._validate(
            order_id, original_amount_cents, final_amount_cents, payment_kind, payment_channel
        )
        order_id = order_id.strip()
        log = logger.bind(order_id=order_id, payer_id=str(payer_id))

        existing = await self._fetch(db, order_id)
        if existing is not None:
            log.info("payment_already_recorded")
            metrics.record_payment("duplicate")
            return AttributionResult.from_row(existing, idempotent_replay=True)

        referrer = await self._resolve_referrer(
            db, payer_id, referral_hint or ReferralHint(), payment_kind
        )
        if referrer is not None:
            rate_bps, commission_cents = self.policy.creator_commission(
                final_amount_cents, referrer.lifetime_paid_users
            )
        else:
            rate_bps, commission_cents = 0, 0

        paid_at = paid_at or utcnow()
        row = PaymentAttribution(
            order_id=order_id,
            payer_id=payer_id,
            creator_id=referrer.creator_id if referrer else None,
            discount_code_id=referrer.discount_code_id if referrer else None,
            attribution_source=referrer.source if referrer else None,
            enrollment_ref=enrollment_ref,
            original_amount_cents=original_amount_cents,
            discount_cents=original_amount_cents - final_amount_cents,
            final_amount_cents=final_amount_cents,
            commission_rate_bps=rate_bps,
            commission_cents=commission_cents,
            payment_month=month_start(paid_at),
            paid_at=paid_at,
            tier=tier,
            payment_channel=payment_channel,
            payment_kind=payment_kind,
            counts_as_paid_user=payment_kind == "new",
        )

        # Phase 1: the ledger row, committed on its own
        db.add(row)
        try:
            await db.flush()
            await db.commit()
        except IntegrityError:
            await db.rollback()
            winner = await self._fetch(db, order_id)
            if winner is None:
                log.error("payment_insert_integrity_error_without_winner")
                metrics.record_payment("failed")
                raise PersistenceError("Failed to record payment", {"order_id": order_id})
            log.info("payment_recorded_concurrently")
            metrics.record_payment("duplicate")
            return AttributionResult.from_row(winner, idempotent_replay=True)
        except SQLAlchemyError as e:
            await db.rollback()
            log.error("payment_insert_failed", error=str(e))
            metrics.record_payment("failed")
            raise PersistenceError("Failed to record payment", {"order_id": order_id}) from e

        # Rollback below expires the instance; snapshot it first
        result = AttributionResult.from_row(row, aggregates_applied=True)

        # Phase 2: derived aggregates, one transaction
        if referrer is not None:
            try:
                if await self._apply_aggregates(db, row, referrer):
                    await db.commit()
                else:
                    await db.rollback()
                    log.info(
                        "payment_aggregates_already_reconciled",
                        attribution_id=result.attribution_id,
                    )
            except Exception as e:
                await db.rollback()
                result.aggregates_applied = False
                log.error(
                    "payment_aggregates_failed",
                    attribution_id=result.attribution_id,
                    creator_id=str(referrer.creator_id),
                    error=str(e),
                    exc_info=True,
                )
                metrics.record_aggregate_failure("payment_confirmation")

        metrics.record_payment("recorded", commission_cents)
        log.info(
            "payment_recorded",
            attribution_id=result.attribution_id,
            creator_id=str(referrer.creator_id) if referrer else None,
            attribution_source=result.attribution_source,
            final_amount_cents=final_amount_cents,
            commission_rate_bps=rate_bps,
            commission_cents=commission_cents,
            aggregates_applied=result.aggregates_applied,
        )

        if referrer is not None:
            await self.notifier.notify(self._commission_notification(result, referrer))
        return result

    @staticmethod
    def _commission_notification(result: AttributionResult, referrer: Referrer) -> Notification:
        headline = "New paid user" if result.payment_kind == "new" else "Upgrade payment"
        return Notification(
            event_type=f"payment.{result.payment_kind}",
            aggregate_type="payment_attribution",
            aggregate_id=str(result.attribution_id),
            alert_message=headline,
            alert_data={
                "Order": result.order_id,
                "Creator": str(referrer.creator_id),
                "Source": referrer.source,
                "Amount": format_lkr(result.final_amount_cents),
                "Commission": format_lkr(result.commission_cents),
            },
            priority="low",
            recipient_id=referrer.creator_user_id,
            subject="You earned a commission",
            body=(
                f"A payment of {format_lkr(result.final_amount_cents)} was attributed to you. "
                f"Commission: {format_lkr(result.commission_cents)}."
            ),
            notification_type="success",
        )
