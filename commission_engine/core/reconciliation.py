"""
Reconciliation Job - rebuilds every derived aggregate from the ledger.

The payment ledger and the withdrawal table are the two independent sources
of truth. Replaying them regenerates creator totals, discount-code
conversions, missing user attributions and the whole ``cmo_payouts`` table,
overwriting whatever drifted. Running it twice yields identical state.

Also detects payments the gateway confirmed that never reached the ledger
and records them through the normal ledger path.
"""
import time
import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import and_, case, delete, func, insert, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.core.commission import CommissionPolicy
from commission_engine.core.errors import PersistenceError, SettlementError
from commission_engine.core.ledger import AttributionLedger, ReferralHint
from commission_engine.core.notifications import Notification, Notifier
from commission_engine.core.periods import month_start, utcnow
from commission_engine.core.rollup import derive_payout_status
from commission_engine.database.models import (
    AppliedAttribution,
    CMOPayout,
    CMOPayoutSettlement,
    CreatorProfile,
    DiscountCode,
    PaymentAttribution,
    ReconciliationRun,
    UserAttribution,
    WithdrawalRequest,
)
from commission_engine.database.upsert import insert_for
from commission_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Stored drift details are capped per run
MAX_STORED_DRIFT = 100


class ReconciliationError(PersistenceError):
    """Raised when reconciliation fails."""

    pass


@dataclass(frozen=True)
class GatewayPayment:
    """A payment the gateway reports as confirmed."""

    order_id: str
    payer_id: uuid.UUID
    original_amount_cents: int
    final_amount_cents: int
    enrollment_ref: Optional[str] = None
    referral_code: Optional[str] = None
    discount_code: Optional[str] = None
    tier: Optional[str] = None
    payment_channel: str = "card"
    payment_kind: str = "new"
    paid_at: Optional[datetime] = None


@dataclass
class ReconciliationReport:
    """Summary of one ``recompute_all`` run."""

    run_id: int
    creators_processed: int
    creators_drifted: int
    discount_codes_corrected: int
    attributions_restored: int
    payout_rows: int
    payouts_drifted: int
    drift: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OrphanBackfillReport:
    """Summary of an orphaned-payment backfill."""

    checked: int
    orphaned: int
    fixed: int
    failed: int
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _CreatorTotals:
    lifetime_paid_users: int = 0
    monthly_paid_users: int = 0
    commission_cents: int = 0
    withdrawn_gross_cents: int = 0
    withdrawn_net_cents: int = 0


class ReconciliationEngine:
    """Replays the ledger over every materialized view."""

    def __init__(
        self,
        policy: Optional[CommissionPolicy] = None,
        ledger: Optional[AttributionLedger] = None,
        notifier: Optional[Notifier] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            policy: Commission tiers used to replay CMO payouts
            ledger: Ledger used to record orphaned payments
            notifier: Best-effort notifier for drift alerts
        """
        self.policy = policy or CommissionPolicy.from_settings()
        self.notifier = notifier or Notifier()
        self.ledger = ledger or AttributionLedger(policy=self.policy, notifier=self.notifier)

    async def _claim_ledger_rows(self, db: AsyncSession) -> int:
        """
        Lock every creator row, then claim the unapplied ledger rows.

        Creator rows are locked in id order before anything is read, so an
        approval debit or a payment credit either committed before this run
        and is in the totals, or waits for this run to commit and applies on
        top of the rebuilt values. Claimed rows are the exact set the rebuild
        counts; a confirmation whose second phase has not run yet finds its
        row claimed and skips it.

        Returns:
            int: ledger rows claimed by this run
        """
        await db.execute(
            select(CreatorProfile.id).order_by(CreatorProfile.id).with_for_update()
        )
        unapplied = select(PaymentAttribution.id, literal("reconciliation")).where(
            PaymentAttribution.creator_id.isnot(None),
            PaymentAttribution.id.not_in(select(AppliedAttribution.attribution_id)),
        )
        result = await db.execute(
            insert(AppliedAttribution).from_select(["attribution_id", "applied_by"], unapplied)
        )
        claimed = result.rowcount or 0
        if claimed:
            logger.warning("unapplied_ledger_rows_claimed", count=claimed)
        return claimed

    @staticmethod
    def _applied(stmt: Any) -> Any:
        """Restrict a ledger query to rows folded into the views."""
        return stmt.join(
            AppliedAttribution, AppliedAttribution.attribution_id == PaymentAttribution.id
        )

    async def _ledger_totals(
        self, db: AsyncSession, current_month: date
    ) -> Dict[uuid.UUID, _CreatorTotals]:
        """Per-creator counts and commissions from both ledgers."""
        paid = PaymentAttribution.counts_as_paid_user.is_(True)
        stmt = (
            select(
                PaymentAttribution.creator_id,
                func.coalesce(func.sum(case((paid, 1), else_=0)), 0).label("lifetime"),
                func.coalesce(
                    func.sum(
                        case(
                            (and_(paid, PaymentAttribution.payment_month == current_month), 1),
                            else_=0,
                        )
                    ),
                    0,
                ).label("monthly"),
                func.coalesce(func.sum(PaymentAttribution.commission_cents), 0).label("commission"),
            )
            .where(PaymentAttribution.creator_id.isnot(None))
            .group_by(PaymentAttribution.creator_id)
        )
        totals: Dict[uuid.UUID, _CreatorTotals] = defaultdict(_CreatorTotals)
        for row in (await db.execute(self._applied(stmt))).all():
            entry = totals[row.creator_id]
            entry.lifetime_paid_users = int(row.lifetime)
            entry.monthly_paid_users = int(row.monthly)
            entry.commission_cents = int(row.commission)

        withdrawals = (
            select(
                WithdrawalRequest.creator_id,
                func.coalesce(func.sum(WithdrawalRequest.amount_cents), 0).label("gross"),
                func.coalesce(func.sum(WithdrawalRequest.net_amount_cents), 0).label("net"),
            )
            .where(WithdrawalRequest.status.in_(("approved", "paid")))
            .group_by(WithdrawalRequest.creator_id)
        )
        for row in (await db.execute(withdrawals)).all():
            entry = totals[row.creator_id]
            entry.withdrawn_gross_cents = int(row.gross)
            entry.withdrawn_net_cents = int(row.net)

        return totals

    async def _reconcile_creators(
        self, db: AsyncSession, current_month: date
    ) -> Tuple[int, List[Dict[str, Any]]]:
        """
        Reset drifted creator totals.

        The stored monthly counter only counts if it belongs to the current
        month; otherwise the effective value is 0.

        Returns:
            Tuple[int, List[Dict[str, Any]]]: creators processed, drift entries
        """
        totals = await self._ledger_totals(db, current_month)
        creators = (
            await db.execute(
                select(
                    CreatorProfile.id,
                    CreatorProfile.lifetime_paid_users,
                    CreatorProfile.monthly_paid_users,
                    CreatorProfile.monthly_paid_users_month,
                    CreatorProfile.available_balance_cents,
                    CreatorProfile.total_withdrawn_cents,
                )
            )
        ).all()

        drift: List[Dict[str, Any]] = []
        for creator in creators:
            expected = totals.get(creator.id, _CreatorTotals())
            available = expected.commission_cents - expected.withdrawn_gross_cents
            if available < 0:
                logger.error(
                    "reconciliation_negative_balance",
                    creator_id=str(creator.id),
                    commission_cents=expected.commission_cents,
                    withdrawn_cents=expected.withdrawn_gross_cents,
                )
                available = 0

            stored_monthly = (
                creator.monthly_paid_users
                if creator.monthly_paid_users_month == current_month
                else 0
            )
            differences = {
                name: {"stored": stored, "expected": wanted}
                for name, stored, wanted in (
                    ("lifetime_paid_users", creator.lifetime_paid_users, expected.lifetime_paid_users),
                    ("monthly_paid_users", stored_monthly, expected.monthly_paid_users),
                    ("available_balance_cents", creator.available_balance_cents, available),
                    ("total_withdrawn_cents", creator.total_withdrawn_cents, expected.withdrawn_net_cents),
                )
                if stored != wanted
            }
            if not differences:
                continue

            logger.warning(
                "creator_aggregate_drift",
                creator_id=str(creator.id),
                differences=differences,
            )
            drift.append({"creator_id": str(creator.id), "differences": differences})

            await db.execute(
                update(CreatorProfile)
                .where(CreatorProfile.id == creator.id)
                .values(
                    lifetime_paid_users=expected.lifetime_paid_users,
                    monthly_paid_users=expected.monthly_paid_users,
                    monthly_paid_users_month=current_month,
                    available_balance_cents=available,
                    total_withdrawn_cents=expected.withdrawn_net_cents,
                )
                .execution_options(synchronize_session=False)
            )

        return len(creators), drift

    async def _reconcile_discount_codes(self, db: AsyncSession) -> int:
        """Recount ``paid_conversions``. ``usage_count`` is left as is."""
        stmt = (
            select(
                PaymentAttribution.discount_code_id,
                func.sum(case((PaymentAttribution.counts_as_paid_user.is_(True), 1), else_=0)).label(
                    "conversions"
                ),
            )
            .where(PaymentAttribution.discount_code_id.isnot(None))
            .group_by(PaymentAttribution.discount_code_id)
        )
        rows = (await db.execute(self._applied(stmt))).all()
        conversions = {row.discount_code_id: int(row.conversions or 0) for row in rows}

        corrected = 0
        codes = (await db.execute(select(DiscountCode.id, DiscountCode.paid_conversions))).all()
        for code in codes:
            expected = conversions.get(code.id, 0)
            if code.paid_conversions == expected:
                continue
            corrected += 1
            logger.warning(
                "discount_code_drift",
                discount_code_id=str(code.id),
                stored=code.paid_conversions,
                expected=expected,
            )
            await db.execute(
                update(DiscountCode)
                .where(DiscountCode.id == code.id)
                .values(paid_conversions=expected)
                .execution_options(synchronize_session=False)
            )
        return corrected

    async def _restore_user_attributions(self, db: AsyncSession) -> int:
        """Re-create missing first attributions from the earliest new purchase."""
        stmt = (
            select(
                PaymentAttribution.payer_id,
                PaymentAttribution.creator_id,
                PaymentAttribution.discount_code_id,
                PaymentAttribution.attribution_source,
                PaymentAttribution.order_id,
            )
            .where(
                PaymentAttribution.creator_id.isnot(None),
                PaymentAttribution.payment_kind == "new",
                PaymentAttribution.payer_id.not_in(select(UserAttribution.payer_id)),
            )
            .order_by(PaymentAttribution.id)
        )
        restored = 0
        seen = set()
        for row in (await db.execute(self._applied(stmt))).all():
            if row.payer_id in seen:
                continue
            seen.add(row.payer_id)
            insert = insert_for(db, UserAttribution).values(
                payer_id=row.payer_id,
                creator_id=row.creator_id,
                discount_code_id=row.discount_code_id,
                referral_source=row.attribution_source,
                order_id=row.order_id,
            )
            await db.execute(insert.on_conflict_do_nothing(index_elements=["payer_id"]))
            restored += 1

        if restored:
            logger.warning("user_attributions_restored", count=restored)
        return restored

    async def _rebuild_cmo_payouts(self, db: AsyncSession, now: datetime) -> Tuple[int, int]:
        """
        Delete and regenerate every CMO payout row.

        Ledger rows are replayed in id order through each CMO's current
        creators, keeping a running year-to-date paid-user count per CMO.

        Returns:
            Tuple[int, int]: rows written, rows whose totals changed
        """
        previous = {
            (row.cmo_id, row.payout_month): (row.paid_users, row.total_commission_cents)
            for row in (
                await db.execute(
                    select(
                        CMOPayout.cmo_id,
                        CMOPayout.payout_month,
                        CMOPayout.paid_users,
                        CMOPayout.total_commission_cents,
                    )
                )
            ).all()
        }
        settled = {
            (row.cmo_id, row.payout_month)
            for row in (
                await db.execute(select(CMOPayoutSettlement.cmo_id, CMOPayoutSettlement.payout_month))
            ).all()
        }

        stmt = (
            select(
                CreatorProfile.cmo_id,
                PaymentAttribution.final_amount_cents,
                PaymentAttribution.counts_as_paid_user,
                PaymentAttribution.payment_month,
            )
            .join(CreatorProfile, CreatorProfile.id == PaymentAttribution.creator_id)
            .where(CreatorProfile.cmo_id.isnot(None))
            .order_by(PaymentAttribution.id)
        )

        ytd: Dict[Tuple[uuid.UUID, int], int] = defaultdict(int)
        payouts: Dict[Tuple[uuid.UUID, date], Dict[str, int]] = {}
        for row in (await db.execute(self._applied(stmt))).all():
            if row.counts_as_paid_user:
                ytd[(row.cmo_id, row.payment_month.year)] += 1
            commission = self.policy.cmo_commission(
                row.final_amount_cents, ytd[(row.cmo_id, row.payment_month.year)]
            )
            entry = payouts.setdefault(
                (row.cmo_id, row.payment_month),
                {"paid_users": 0, "gross": 0, "base": 0, "bonus": 0},
            )
            entry["paid_users"] += 1 if row.counts_as_paid_user else 0
            entry["gross"] += row.final_amount_cents
            entry["base"] += commission.base_cents
            entry["bonus"] += commission.bonus_cents

        await db.execute(delete(CMOPayout))
        drifted = 0
        for (cmo_id, payout_month), entry in payouts.items():
            total = entry["base"] + entry["bonus"]
            if previous.get((cmo_id, payout_month)) != (entry["paid_users"], total):
                drifted += 1
                logger.warning(
                    "cmo_payout_drift",
                    cmo_id=str(cmo_id),
                    payout_month=payout_month.isoformat(),
                    stored=previous.get((cmo_id, payout_month)),
                    expected=(entry["paid_users"], total),
                )
            db.add(
                CMOPayout(
                    cmo_id=cmo_id,
                    payout_month=payout_month,
                    paid_users=entry["paid_users"],
                    gross_amount_cents=entry["gross"],
                    base_commission_cents=entry["base"],
                    bonus_commission_cents=entry["bonus"],
                    total_commission_cents=total,
                    status=derive_payout_status(
                        payout_month, (cmo_id, payout_month) in settled, now
                    ),
                )
            )
        await db.flush()
        return len(payouts), drifted

    async def recompute_all(
        self, db: AsyncSession, now: Optional[datetime] = None
    ) -> ReconciliationReport:
        """
        Rebuild every derived aggregate from the ledgers in one transaction.

        Args:
            db: Database session
            now: Clock override (selects the current month)

        Returns:
            ReconciliationReport: drift found and corrected

        Raises:
            ReconciliationError: If the run fails; nothing is changed
        """
        now = now or utcnow()
        current_month = month_start(now)
        started = time.perf_counter()
        logger.info("reconciliation_started", current_month=current_month.isoformat())

        run = ReconciliationRun(status="in_progress", started_at=utcnow())
        db.add(run)
        await db.commit()
        run_id = run.id

        try:
            claimed = await self._claim_ledger_rows(db)
            creators_processed, drift = await self._reconcile_creators(db, current_month)
            codes_corrected = await self._reconcile_discount_codes(db)
            restored = await self._restore_user_attributions(db)
            payout_rows, payouts_drifted = await self._rebuild_cmo_payouts(db, now)

            await db.execute(
                update(ReconciliationRun)
                .where(ReconciliationRun.id == run_id)
                .values(
                    status="completed",
                    creators_processed=creators_processed,
                    creators_drifted=len(drift),
                    payout_rows=payout_rows,
                    completed_at=utcnow(),
                    details={
                        "drift": drift[:MAX_STORED_DRIFT],
                        "discount_codes_corrected": codes_corrected,
                        "attributions_restored": restored,
                        "payouts_drifted": payouts_drifted,
                        "ledger_rows_claimed": claimed,
                    },
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        except Exception as e:
            await db.rollback()
            logger.error("reconciliation_failed", run_id=run_id, error=str(e), exc_info=True)
            await db.execute(
                update(ReconciliationRun)
                .where(ReconciliationRun.id == run_id)
                .values(status="failed", completed_at=utcnow(), details={"error": str(e)})
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            raise ReconciliationError(f"Reconciliation failed: {str(e)}") from e

        duration = time.perf_counter() - started
        metrics.set_reconciliation_metrics(len(drift), duration)
        logger.info(
            "reconciliation_completed",
            run_id=run_id,
            creators_processed=creators_processed,
            creators_drifted=len(drift),
            discount_codes_corrected=codes_corrected,
            attributions_restored=restored,
            payout_rows=payout_rows,
            payouts_drifted=payouts_drifted,
            duration_seconds=round(duration, 3),
        )

        if drift or payouts_drifted:
            await self.notifier.notify(
                Notification(
                    event_type="reconciliation.drift_corrected",
                    aggregate_type="reconciliation_run",
                    aggregate_id=str(run_id),
                    alert_message="Reconciliation corrected drifted aggregates",
                    alert_data={
                        "Creators drifted": len(drift),
                        "Payouts drifted": payouts_drifted,
                        "Attributions restored": restored,
                    },
                    priority="high",
                )
            )

        return ReconciliationReport(
            run_id=run_id,
            creators_processed=creators_processed,
            creators_drifted=len(drift),
            discount_codes_corrected=codes_corrected,
            attributions_restored=restored,
            payout_rows=payout_rows,
            payouts_drifted=payouts_drifted,
            drift=drift,
        )

    async def find_orphaned_payments(
        self, db: AsyncSession, confirmed: Sequence[GatewayPayment]
    ) -> List[GatewayPayment]:
        """
        Gateway-confirmed payments with no ledger row.

        Args:
            db: Database session
            confirmed: Payments the gateway reports as confirmed

        Returns:
            List[GatewayPayment]: the ones missing from the ledger
        """
        if not confirmed:
            return []
        order_ids = [payment.order_id for payment in confirmed]
        recorded = set(
            (
                await db.execute(
                    select(PaymentAttribution.order_id).where(
                        PaymentAttribution.order_id.in_(order_ids)
                    )
                )
            ).scalars().all()
        )
        orphans = [payment for payment in confirmed if payment.order_id not in recorded]
        if orphans:
            logger.warning(
                "orphaned_payments_found",
                checked=len(confirmed),
                orphaned=len(orphans),
            )
        return orphans

    async def backfill_orphans(
        self, db: AsyncSession, confirmed: Sequence[GatewayPayment]
    ) -> OrphanBackfillReport:
        """Record every orphaned payment through the ledger."""
        orphans = await self.find_orphaned_payments(db, confirmed)
        report = OrphanBackfillReport(
            checked=len(confirmed), orphaned=len(orphans), fixed=0, failed=0
        )

        for payment in orphans:
            try:
                await self.ledger.record_payment(
                    db,
                    payment.order_id,
                    payment.payer_id,
                    payment.enrollment_ref,
                    payment.original_amount_cents,
                    payment.final_amount_cents,
                    ReferralHint(
                        referral_code=payment.referral_code,
                        discount_code=payment.discount_code,
                    ),
                    tier=payment.tier,
                    payment_channel=payment.payment_channel,
                    payment_kind=payment.payment_kind,
                    paid_at=payment.paid_at,
                )
                report.fixed += 1
            except SettlementError as e:
                report.failed += 1
                report.errors.append({"order_id": payment.order_id, "error": e.message})
                logger.error(
                    "orphan_backfill_failed",
                    order_id=payment.order_id,
                    error=e.message,
                )

        logger.info(
            "orphan_backfill_completed",
            checked=report.checked,
            orphaned=report.orphaned,
            fixed=report.fixed,
            failed=report.failed,
        )
        return report
