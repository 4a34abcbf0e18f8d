"""
CMO Roll-up Aggregator - monthly commission per regional manager.

Each qualifying ledger event is folded into its (CMO, month) row with one
atomic INSERT ... ON CONFLICT DO UPDATE. The year-to-date paid-user count
that decides the bonus is read from ledger rows with ``id <=`` the event,
so incremental updates and a full replay in id order produce the same rows.
"""
import uuid
from datetime import date, datetime
from typing import Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.core.audit import record_admin_action
from commission_engine.core.commission import CMOCommission, CommissionPolicy
from commission_engine.core.errors import ConflictError, NotFoundError, ValidationError
from commission_engine.core.notifications import Notification, Notifier, format_lkr
from commission_engine.core.periods import month_start, utcnow, year_bounds
from commission_engine.core.verification import Actor, PrivilegeGuard
from commission_engine.database.models import (
    CMOPayout,
    CMOPayoutSettlement,
    CreatorProfile,
    PaymentAttribution,
)
from commission_engine.database.upsert import insert_for

logger = structlog.get_logger(__name__)


def derive_payout_status(payout_month: date, settled: bool, now: datetime) -> str:
    """
    Status of a (CMO, month) payout.

    ``paid`` once a settlement exists, ``eligible`` once the month has
    closed, ``pending`` while it is still running.
    """
    if settled:
        return "paid"
    if payout_month < month_start(now):
        return "eligible"
    return "pending"


async def count_ytd_paid_users(
    db: AsyncSession,
    cmo_id: uuid.UUID,
    payment_month: date,
    up_to_id: int,
) -> int:
    """
    Paid users attributed through a CMO's current creators this calendar year.

    Args:
        db: Database session
        cmo_id: CMO whose subordinates are counted
        payment_month: Month of the triggering event (selects the year)
        up_to_id: Count ledger rows with ``id <=`` this value

    Returns:
        int: Year-to-date paid users including the triggering event
    """
    year_start, year_end = year_bounds(payment_month)
    stmt = (
        select(func.count(PaymentAttribution.id))
        .join(CreatorProfile, CreatorProfile.id == PaymentAttribution.creator_id)
        .where(
            CreatorProfile.cmo_id == cmo_id,
            PaymentAttribution.counts_as_paid_user.is_(True),
            PaymentAttribution.payment_month >= year_start,
            PaymentAttribution.payment_month <= year_end,
            PaymentAttribution.id <= up_to_id,
        )
    )
    return (await db.scalar(stmt)) or 0


class CMORollup:
    """Maintains ``cmo_payouts`` and settles closed months."""

    def __init__(
        self,
        policy: Optional[CommissionPolicy] = None,
        guard: Optional[PrivilegeGuard] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.policy = policy or CommissionPolicy.from_settings()
        self._guard = guard
        self.notifier = notifier or Notifier()

    @property
    def guard(self) -> PrivilegeGuard:
        if self._guard is None:
            self._guard = PrivilegeGuard()
        return self._guard

    async def apply_event(
        self,
        db: AsyncSession,
        attribution: PaymentAttribution,
        cmo_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> CMOCommission:
        """
        Fold one ledger event into its (CMO, month) payout row.

        Runs inside the caller's transaction; the caller commits.

        Args:
            db: Database session
            attribution: Committed ledger row
            cmo_id: CMO of the attributed creator
            now: Clock override for the initial row status

        Returns:
            CMOCommission: commission added by this event
        """
        ytd_paid_users = await count_ytd_paid_users(
            db, cmo_id, attribution.payment_month, attribution.id
        )
        commission = self.policy.cmo_commission(attribution.final_amount_cents, ytd_paid_users)
        paid_user = 1 if attribution.counts_as_paid_user else 0

        stmt = insert_for(db, CMOPayout).values(
            cmo_id=cmo_id,
            payout_month=attribution.payment_month,
            paid_users=paid_user,
            gross_amount_cents=attribution.final_amount_cents,
            base_commission_cents=commission.base_cents,
            bonus_commission_cents=commission.bonus_cents,
            total_commission_cents=commission.total_cents,
            status=derive_payout_status(attribution.payment_month, False, now or utcnow()),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["cmo_id", "payout_month"],
            set_={
                "paid_users": CMOPayout.paid_users + stmt.excluded.paid_users,
                "gross_amount_cents": CMOPayout.gross_amount_cents
                + stmt.excluded.gross_amount_cents,
                "base_commission_cents": CMOPayout.base_commission_cents
                + stmt.excluded.base_commission_cents,
                "bonus_commission_cents": CMOPayout.bonus_commission_cents
                + stmt.excluded.bonus_commission_cents,
                "total_commission_cents": CMOPayout.total_commission_cents
                + stmt.excluded.total_commission_cents,
            },
        )
        await db.execute(stmt)

        logger.debug(
            "cmo_payout_rolled_up",
            cmo_id=str(cmo_id),
            payout_month=attribution.payment_month.isoformat(),
            ytd_paid_users=ytd_paid_users,
            bonus_applied=commission.bonus_applied,
            total_cents=commission.total_cents,
        )
        return commission

    async def settle_payout(
        self,
        db: AsyncSession,
        actor: Actor,
        cmo_id: uuid.UUID,
        payout_month: date,
        verification_code: Optional[str],
        now: Optional[datetime] = None,
    ) -> CMOPayout:
        """
        Record that a closed month's CMO payout was paid out.

        Args:
            db: Database session
            actor: Admin performing the settlement
            cmo_id: CMO being paid
            payout_month: Any date within the month being settled
            verification_code: One-time credential
            now: Clock override

        Returns:
            CMOPayout: the payout row, now ``paid``

        Raises:
            AuthorizationError: If the actor is not an admin
            VerificationFailedError: If the credential is wrong
            ValidationError: If the month has not closed yet
            NotFoundError: If there is no payout row for the month
            ConflictError: If the month was already settled
        """
        self.guard.require_admin(actor, verification_code, "settle_cmo_payout")
        now = now or utcnow()
        payout_month = month_start(payout_month)
        if payout_month >= month_start(now):
            raise ValidationError(
                "Payout month has not closed yet",
                {"payout_month": payout_month.isoformat()},
            )

        payout = await db.scalar(
            select(CMOPayout).where(
                CMOPayout.cmo_id == cmo_id,
                CMOPayout.payout_month == payout_month,
            )
        )
        if payout is None:
            raise NotFoundError(
                "No payout for this CMO and month",
                {"cmo_id": str(cmo_id), "payout_month": payout_month.isoformat()},
            )
        amount_cents = payout.total_commission_cents

        db.add(
            CMOPayoutSettlement(
                cmo_id=cmo_id,
                payout_month=payout_month,
                amount_cents=amount_cents,
                paid_by=actor.user_id,
                paid_at=now,
            )
        )
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            raise ConflictError(
                "Payout already settled",
                {"cmo_id": str(cmo_id), "payout_month": payout_month.isoformat()},
            )

        await db.execute(
            update(CMOPayout)
            .where(CMOPayout.id == payout.id, CMOPayout.status != "paid")
            .values(status="paid")
            .execution_options(synchronize_session=False)
        )
        record_admin_action(
            db,
            actor,
            "settle_cmo_payout",
            "cmo_payout",
            str(payout.id),
            {"cmo_id": str(cmo_id), "payout_month": payout_month.isoformat(), "amount_cents": amount_cents},
        )
        await db.commit()

        logger.info(
            "cmo_payout_settled",
            cmo_id=str(cmo_id),
            payout_month=payout_month.isoformat(),
            amount_cents=amount_cents,
            admin_id=str(actor.user_id),
        )

        await self.notifier.notify(
            Notification(
                event_type="cmo_payout.settled",
                aggregate_type="cmo_payout",
                aggregate_id=str(payout.id),
                alert_message="CMO payout settled",
                alert_data={
                    "CMO": str(cmo_id),
                    "Month": payout_month.strftime("%Y-%m"),
                    "Amount": format_lkr(amount_cents),
                },
            )
        )

        result = await db.execute(
            select(CMOPayout)
            .where(CMOPayout.id == payout.id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
