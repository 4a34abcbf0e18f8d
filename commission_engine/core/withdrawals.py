"""
Withdrawal State Machine.

    pending -> approved -> paid
    pending -> rejected

``paid`` and ``rejected`` are terminal. Every transition is a conditional
UPDATE keyed on the expected prior status, so two admins acting on the same
request cannot both succeed. The balance is debited on approval, in the same
transaction as the status change.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.config import Settings, get_settings
from commission_engine.core.audit import record_admin_action
from commission_engine.core.balances import debit_withdrawal
from commission_engine.core.commission import CommissionPolicy
from commission_engine.core.errors import ConflictError, NotFoundError, ValidationError
from commission_engine.core.notifications import Notification, Notifier, format_lkr
from commission_engine.core.periods import utcnow
from commission_engine.core.verification import Actor, PrivilegeGuard
from commission_engine.database.models import (
    CreatorProfile,
    WithdrawalMethod,
    WithdrawalRequest,
)
from commission_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class MarkPaidResult:
    """Outcome of ``mark_paid``; a replay returns the earlier result unchanged."""

    withdrawal: WithdrawalRequest
    idempotent_replay: bool = False


class WithdrawalStateMachine:
    """Request, approve, pay and reject creator withdrawals."""

    def __init__(
        self,
        policy: Optional[CommissionPolicy] = None,
        guard: Optional[PrivilegeGuard] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the state machine.

        Args:
            policy: Fee configuration
            guard: Privilege and credential checks for admin transitions
            notifier: Best-effort notifier
            settings: Application settings (minimum payout)
        """
        self.settings = settings or get_settings()
        self.policy = policy or CommissionPolicy.from_settings(self.settings)
        self.guard = guard or PrivilegeGuard(settings=self.settings)
        self.notifier = notifier or Notifier()

    @staticmethod
    async def _load(db: AsyncSession, request_id: uuid.UUID) -> WithdrawalRequest:
        result = await db.execute(
            select(WithdrawalRequest)
            .where(WithdrawalRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        withdrawal = result.scalar_one_or_none()
        if withdrawal is None:
            raise NotFoundError("Withdrawal not found", {"withdrawal_id": str(request_id)})
        return withdrawal

    async def _transition_conflict(
        self, db: AsyncSession, request_id: uuid.UUID, transition: str
    ) -> ConflictError:
        """
        Explain why a conditional transition matched no row.

        Raises:
            NotFoundError: If the request does not exist
        """
        status = await db.scalar(
            select(WithdrawalRequest.status).where(WithdrawalRequest.id == request_id)
        )
        await db.rollback()
        if status is None:
            raise NotFoundError("Withdrawal not found", {"withdrawal_id": str(request_id)})
        metrics.record_withdrawal_transition(transition, "conflict")
        logger.info(
            "withdrawal_transition_conflict",
            withdrawal_id=str(request_id),
            transition=transition,
            current_status=status,
        )
        return ConflictError(
            f"Withdrawal already handled (status: {status})",
            {"withdrawal_id": str(request_id), "status": status},
        )

    async def request(
        self,
        db: AsyncSession,
        creator_id: uuid.UUID,
        withdrawal_method_id: uuid.UUID,
        amount_cents: int,
    ) -> WithdrawalRequest:
        """
        Open a withdrawal request.

        Args:
            db: Database session
            creator_id: Requesting creator
            withdrawal_method_id: Payout destination owned by the creator
            amount_cents: Gross amount to withdraw

        Returns:
            WithdrawalRequest: the new ``pending`` request

        Raises:
            ValidationError: If the amount is invalid or exceeds the balance
            NotFoundError: If the creator or method does not exist
            ConflictError: If the creator already has a pending request
        """
        if amount_cents <= 0:
            raise ValidationError("Amount must be positive")

        if amount_cents < self.settings.minimum_payout_cents:
            raise ValidationError(
                f"Minimum withdrawal is {format_lkr(self.settings.minimum_payout_cents)}",
                {"minimum_cents": self.settings.minimum_payout_cents},
            )

        available = await db.scalar(
            select(CreatorProfile.available_balance_cents).where(CreatorProfile.id == creator_id)
        )
        if available is None:
            raise NotFoundError("Creator not found", {"creator_id": str(creator_id)})

        method_owner = await db.scalar(
            select(WithdrawalMethod.creator_id).where(WithdrawalMethod.id == withdrawal_method_id)
        )
        if method_owner != creator_id:
            raise NotFoundError(
                "Withdrawal method not found",
                {"withdrawal_method_id": str(withdrawal_method_id)},
            )

        if amount_cents > available:
            raise ValidationError(
                "Insufficient balance",
                {"available_cents": available, "requested_cents": amount_cents},
            )

        pending_id = await db.scalar(
            select(WithdrawalRequest.id).where(
                WithdrawalRequest.creator_id == creator_id,
                WithdrawalRequest.status == "pending",
            )
        )
        if pending_id is not None:
            raise ConflictError(
                "A pending withdrawal already exists",
                {"withdrawal_id": str(pending_id)},
            )

        fee = self.policy.withdrawal_fee(amount_cents)
        withdrawal = WithdrawalRequest(
            creator_id=creator_id,
            withdrawal_method_id=withdrawal_method_id,
            amount_cents=amount_cents,
            fee_bps=fee.fee_bps,
            fee_cents=fee.fee_cents,
            net_amount_cents=fee.net_cents,
            status="pending",
        )
        db.add(withdrawal)
        try:
            await db.flush()
            await db.commit()
        except IntegrityError:
            # Partial unique index: a concurrent request got there first
            await db.rollback()
            metrics.record_withdrawal_transition("request", "conflict")
            raise ConflictError("A pending withdrawal already exists")

        withdrawal = await self._load(db, withdrawal.id)
        metrics.record_withdrawal_transition("request", "success")
        metrics.record_withdrawal_amount(amount_cents)
        logger.info(
            "withdrawal_requested",
            withdrawal_id=str(withdrawal.id),
            creator_id=str(creator_id),
            amount_cents=amount_cents,
            fee_cents=fee.fee_cents,
            net_amount_cents=fee.net_cents,
        )

        await self.notifier.notify(
            Notification(
                event_type="withdrawal.requested",
                aggregate_type="withdrawal_request",
                aggregate_id=str(withdrawal.id),
                alert_message="New withdrawal request",
                alert_data={
                    "Creator": str(creator_id),
                    "Amount": format_lkr(amount_cents),
                    "Fee": format_lkr(fee.fee_cents),
                    "Net": format_lkr(fee.net_cents),
                },
                priority="high",
            )
        )
        return withdrawal

    async def approve(
        self,
        db: AsyncSession,
        actor: Actor,
        request_id: uuid.UUID,
        verification_code: Optional[str],
        admin_notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WithdrawalRequest:
        """
        Approve a pending request and debit the creator's balance.

        Raises:
            AuthorizationError: If the actor is not an admin
            VerificationFailedError: If the credential is wrong
            NotFoundError: If the request does not exist
            ConflictError: If the request is no longer pending
            ValidationError: If the balance no longer covers the amount
        """
        self.guard.require_admin(actor, verification_code, "approve_withdrawal")
        now = now or utcnow()

        values = {"status": "approved", "reviewed_by": actor.user_id, "reviewed_at": now}
        if admin_notes is not None:
            values["admin_notes"] = admin_notes
        result = await db.execute(
            update(WithdrawalRequest)
            .where(WithdrawalRequest.id == request_id, WithdrawalRequest.status == "pending")
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise await self._transition_conflict(db, request_id, "approve")

        row = (
            await db.execute(
                select(
                    WithdrawalRequest.creator_id,
                    WithdrawalRequest.amount_cents,
                    WithdrawalRequest.net_amount_cents,
                ).where(WithdrawalRequest.id == request_id)
            )
        ).one()

        if not await debit_withdrawal(db, row.creator_id, row.amount_cents, row.net_amount_cents):
            await db.rollback()
            metrics.record_withdrawal_transition("approve", "rejected")
            logger.warning(
                "withdrawal_approval_insufficient_balance",
                withdrawal_id=str(request_id),
                creator_id=str(row.creator_id),
                amount_cents=row.amount_cents,
            )
            raise ValidationError(
                "Insufficient balance to approve withdrawal",
                {"withdrawal_id": str(request_id)},
            )

        record_admin_action(
            db,
            actor,
            "approve_withdrawal",
            "withdrawal_request",
            str(request_id),
            {"amount_cents": row.amount_cents, "admin_notes": admin_notes},
        )
        await db.commit()

        metrics.record_withdrawal_transition("approve", "success")
        logger.info(
            "withdrawal_approved",
            withdrawal_id=str(request_id),
            creator_id=str(row.creator_id),
            admin_id=str(actor.user_id),
            amount_cents=row.amount_cents,
        )

        withdrawal = await self._load(db, request_id)
        await self.notifier.notify(
            self._creator_notification(
                withdrawal,
                "withdrawal.approved",
                "Withdrawal approved",
                f"Your withdrawal of {format_lkr(withdrawal.amount_cents)} was approved.",
                "success",
            )
        )
        return withdrawal

    async def mark_paid(
        self,
        db: AsyncSession,
        actor: Actor,
        request_id: uuid.UUID,
        verification_code: Optional[str],
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MarkPaidResult:
        """
        Record that an approved withdrawal was paid out.

        A retry with the same idempotency key returns the first result.

        Raises:
            AuthorizationError: If the actor is not an admin
            VerificationFailedError: If the credential is wrong
            NotFoundError: If the request does not exist
            ConflictError: If the request is not approved, or the key belongs
                to a different request
        """
        self.guard.require_admin(actor, verification_code, "mark_withdrawal_paid")
        now = now or utcnow()

        if idempotency_key:
            prior = await self._by_idempotency_key(db, idempotency_key)
            if prior is not None:
                return self._replay(prior, request_id, idempotency_key)
        else:
            idempotency_key = f"paid_{request_id}_{int(now.timestamp() * 1000)}"

        try:
            result = await db.execute(
                update(WithdrawalRequest)
                .where(WithdrawalRequest.id == request_id, WithdrawalRequest.status == "approved")
                .values(
                    status="paid",
                    paid_by=actor.user_id,
                    paid_at=now,
                    idempotency_key=idempotency_key,
                )
                .execution_options(synchronize_session=False)
            )
        except IntegrityError:
            await db.rollback()
            winner = await self._by_idempotency_key(db, idempotency_key)
            if winner is None:
                raise ConflictError("Withdrawal already handled", {"withdrawal_id": str(request_id)})
            return self._replay(winner, request_id, idempotency_key)

        if result.rowcount == 0:
            # A concurrent call with the same key may have just committed
            winner = await self._by_idempotency_key(db, idempotency_key)
            if winner is not None:
                await db.rollback()
                return self._replay(winner, request_id, idempotency_key)
            raise await self._transition_conflict(db, request_id, "mark_paid")

        record_admin_action(
            db,
            actor,
            "mark_withdrawal_paid",
            "withdrawal_request",
            str(request_id),
            {"idempotency_key": idempotency_key},
        )
        await db.commit()

        metrics.record_withdrawal_transition("mark_paid", "success")
        logger.info(
            "withdrawal_paid",
            withdrawal_id=str(request_id),
            admin_id=str(actor.user_id),
            idempotency_key=idempotency_key,
        )

        withdrawal = await self._load(db, request_id)
        await self.notifier.notify(
            self._creator_notification(
                withdrawal,
                "withdrawal.paid",
                "Withdrawal paid",
                f"{format_lkr(withdrawal.net_amount_cents)} has been paid to your account.",
                "success",
            )
        )
        return MarkPaidResult(withdrawal=withdrawal)

    async def reject(
        self,
        db: AsyncSession,
        actor: Actor,
        request_id: uuid.UUID,
        verification_code: Optional[str],
        reason: Optional[str],
        admin_notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WithdrawalRequest:
        """
        Reject a pending request. The balance is untouched.

        Raises:
            AuthorizationError: If the actor is not an admin
            VerificationFailedError: If the credential is wrong
            ValidationError: If no reason is given
            NotFoundError: If the request does not exist
            ConflictError: If the request is no longer pending
        """
        self.guard.require_admin(actor, verification_code, "reject_withdrawal")
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        now = now or utcnow()

        values = {
            "status": "rejected",
            "reviewed_by": actor.user_id,
            "reviewed_at": now,
            "rejection_reason": reason.strip(),
        }
        if admin_notes is not None:
            values["admin_notes"] = admin_notes
        result = await db.execute(
            update(WithdrawalRequest)
            .where(WithdrawalRequest.id == request_id, WithdrawalRequest.status == "pending")
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise await self._transition_conflict(db, request_id, "reject")

        record_admin_action(
            db,
            actor,
            "reject_withdrawal",
            "withdrawal_request",
            str(request_id),
            {"reason": reason.strip(), "admin_notes": admin_notes},
        )
        await db.commit()

        metrics.record_withdrawal_transition("reject", "success")
        logger.info(
            "withdrawal_rejected",
            withdrawal_id=str(request_id),
            admin_id=str(actor.user_id),
        )

        withdrawal = await self._load(db, request_id)
        await self.notifier.notify(
            self._creator_notification(
                withdrawal,
                "withdrawal.rejected",
                "Withdrawal rejected",
                f"Your withdrawal request was rejected: {withdrawal.rejection_reason}",
                "warning",
            )
        )
        return withdrawal

    @staticmethod
    async def _by_idempotency_key(db: AsyncSession, key: str) -> Optional[WithdrawalRequest]:
        result = await db.execute(
            select(WithdrawalRequest)
            .where(WithdrawalRequest.idempotency_key == key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _replay(prior: WithdrawalRequest, request_id: uuid.UUID, key: str) -> MarkPaidResult:
        if prior.id != request_id:
            raise ConflictError(
                "Idempotency key already used for another withdrawal",
                {"idempotency_key": key},
            )
        metrics.record_withdrawal_transition("mark_paid", "replay")
        logger.info("withdrawal_paid_replay", withdrawal_id=str(request_id), idempotency_key=key)
        return MarkPaidResult(withdrawal=prior, idempotent_replay=True)

    @staticmethod
    def _creator_notification(
        withdrawal: WithdrawalRequest,
        event_type: str,
        subject: str,
        body: str,
        notification_type: str,
    ) -> Notification:
        return Notification(
            event_type=event_type,
            aggregate_type="withdrawal_request",
            aggregate_id=str(withdrawal.id),
            alert_message=subject,
            alert_data={
                "Creator": str(withdrawal.creator_id),
                "Amount": format_lkr(withdrawal.amount_cents),
                "Status": withdrawal.status,
            },
            recipient_creator_id=withdrawal.creator_id,
            subject=subject,
            body=body,
            notification_type=notification_type,
        )
