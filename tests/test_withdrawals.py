"""
Tests for the withdrawal state machine.

    pending -> approved -> paid
    pending -> rejected
"""
import asyncio
import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from commission_engine.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
    VerificationFailedError,
)
from commission_engine.core.verification import Actor
from commission_engine.database.models import (
    AdminAction,
    CreatorProfile,
    WithdrawalRequest,
)

OTP = "123456"
TEN_THOUSAND_LKR = 1_000_000


@pytest.fixture
def funded(factory):
    """Creator with LKR 25,000 available and a bank method."""

    async def _funded(balance_cents: int = 2_500_000):
        creator = await factory.creator(available_balance_cents=balance_cents)
        method = await factory.method(creator)
        return creator, method

    return _funded


class TestRequest:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_computes_fee_without_debiting(
        self, test_db, withdrawals, funded, reload
    ) -> None:
        creator, method = await funded()

        withdrawal = await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)

        assert withdrawal.status == "pending"
        assert withdrawal.fee_bps == 300
        assert withdrawal.fee_cents == 30_000
        assert withdrawal.net_amount_cents == 970_000
        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.available_balance_cents == 2_500_000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_below_minimum_rejected(self, test_db, withdrawals, funded) -> None:
        creator, method = await funded()

        with pytest.raises(ValidationError) as exc_info:
            await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR - 1)
        assert exc_info.value.details["minimum_cents"] == TEN_THOUSAND_LKR

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, test_db, withdrawals, funded) -> None:
        creator, method = await funded()

        with pytest.raises(ValidationError):
            await withdrawals.request(test_db, creator.id, method.id, 0)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_above_balance_rejected(self, test_db, withdrawals, funded) -> None:
        creator, method = await funded(balance_cents=1_200_000)

        with pytest.raises(ValidationError):
            await withdrawals.request(test_db, creator.id, method.id, 1_200_001)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_method_must_belong_to_creator(self, test_db, withdrawals, funded) -> None:
        creator, _ = await funded()
        _, foreign_method = await funded()

        with pytest.raises(NotFoundError):
            await withdrawals.request(test_db, creator.id, foreign_method.id, TEN_THOUSAND_LKR)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_creator(self, test_db, withdrawals) -> None:
        with pytest.raises(NotFoundError):
            await withdrawals.request(test_db, uuid.uuid4(), uuid.uuid4(), TEN_THOUSAND_LKR)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_second_pending_request_conflicts(self, test_db, withdrawals, funded) -> None:
        creator, method = await funded()
        await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)

        with pytest.raises(ConflictError):
            await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_requests_open_one_pending(
        self, test_db, session_factory, withdrawals, funded
    ) -> None:
        creator, method = await funded()

        async def request():
            async with session_factory() as db:
                return await withdrawals.request(db, creator.id, method.id, TEN_THOUSAND_LKR)

        results = await asyncio.gather(request(), request(), return_exceptions=True)

        assert len([r for r in results if isinstance(r, WithdrawalRequest)]) == 1
        assert len([r for r in results if isinstance(r, ConflictError)]) == 1
        pending = await test_db.scalar(
            select(func.count())
            .select_from(WithdrawalRequest)
            .where(WithdrawalRequest.creator_id == creator.id, WithdrawalRequest.status == "pending")
        )
        assert pending == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_partial_unique_index_allows_one_pending(self, session_factory, funded) -> None:
        """The storage guard holds even if the pre-check is bypassed."""
        creator, method = await funded()

        def pending_row():
            return WithdrawalRequest(
                creator_id=creator.id,
                withdrawal_method_id=method.id,
                amount_cents=TEN_THOUSAND_LKR,
                fee_bps=300,
                fee_cents=30_000,
                net_amount_cents=970_000,
                status="pending",
            )

        async with session_factory() as db:
            db.add(pending_row())
            await db.commit()

        async with session_factory() as db:
            db.add(pending_row())
            with pytest.raises(IntegrityError):
                await db.commit()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_new_request_allowed_after_rejection(
        self, test_db, withdrawals, funded, factory
    ) -> None:
        creator, method = await funded()
        admin = await factory.admin()
        first = await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)
        await withdrawals.reject(test_db, admin, first.id, OTP, "Bank details mismatch")

        second = await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)

        assert second.status == "pending"
        assert second.id != first.id


class TestApprove:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approve_debits_gross_and_tracks_net(
        self, test_db, withdrawals, funded, factory, reload
    ) -> None:
        creator, method = await funded()
        admin = await factory.admin()
        pending = await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)

        approved = await withdrawals.approve(test_db, admin, pending.id, OTP, admin_notes="ok")

        assert approved.status == "approved"
        assert approved.reviewed_by == admin.user_id
        assert approved.reviewed_at is not None
        assert approved.admin_notes == "ok"
        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.available_balance_cents == 1_500_000
        assert stored.total_withdrawn_cents == 970_000

        audit = await test_db.scalar(
            select(AdminAction).where(AdminAction.action_type == "approve_withdrawal")
        )
        assert audit.admin_id == admin.user_id
        assert audit.target_id == str(pending.id)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_notification_outage_does_not_fail_approval(
        self, test_db, withdrawals, funded, factory, reload, monkeypatch
    ) -> None:
        creator, method = await funded()
        admin = await factory.admin()
        pending = await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)

        def unavailable():
            raise RuntimeError("notification store unavailable")

        monkeypatch.setattr(withdrawals.notifier, "session_factory", unavailable)

        approved = await withdrawals.approve(test_db, admin, pending.id, OTP)

        assert approved.status == "approved"
        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.available_balance_cents == 1_500_000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approve_twice_conflicts(self, test_db, withdrawals, funded, factory, reload) -> None:
        creator, method = await funded()
        admin = await factory.admin()
        pending = await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)
        await withdrawals.approve(test_db, admin, pending.id, OTP)

        with pytest.raises(ConflictError) as exc_info:
            await withdrawals.approve(test_db, admin, pending.id, OTP)

        assert exc_info.value.details["status"] == "approved"
        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.available_balance_cents == 1_500_000

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_approvals_debit_once(
        self, test_db, session_factory, withdrawals, funded, factory, reload
    ) -> None:
        creator, method = await funded()
        admins = [await factory.admin() for _ in range(3)]
        pending = await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)

        async def approve(admin: Actor):
            async with session_factory() as db:
                return await withdrawals.approve(db, admin, pending.id, OTP)

        results = await asyncio.gather(*(approve(a) for a in admins), return_exceptions=True)

        successes = [r for r in results if isinstance(r, WithdrawalRequest)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(successes) == 1
        assert len(conflicts) == 2
        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.available_balance_cents == 1_500_000
        assert stored.total_withdrawn_cents == 970_000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_insufficient_balance_at_approval_reverts(
        self, test_db, withdrawals, funded, factory, reload
    ) -> None:
        creator, method = await funded()
        admin = await factory.admin()
        pending = await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)
        await test_db.execute(
            update(CreatorProfile)
            .where(CreatorProfile.id == creator.id)
            .values(available_balance_cents=500_000)
        )
        await test_db.commit()

        with pytest.raises(ValidationError):
            await withdrawals.approve(test_db, admin, pending.id, OTP)

        stored_request = await reload(test_db, WithdrawalRequest, pending.id)
        assert stored_request.status == "pending"
        assert stored_request.reviewed_by is None
        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.available_balance_cents == 500_000
        assert await test_db.scalar(select(func.count()).select_from(AdminAction)) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_request(self, test_db, withdrawals, factory) -> None:
        admin = await factory.admin()

        with pytest.raises(NotFoundError):
            await withdrawals.approve(test_db, admin, uuid.uuid4(), OTP)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_non_admin_cannot_approve(self, test_db, withdrawals, funded, reload) -> None:
        creator, method = await funded()
        pending = await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)
        actor = Actor(user_id=creator.user_id, roles=frozenset({"creator"}))

        with pytest.raises(AuthorizationError):
            await withdrawals.approve(test_db, actor, pending.id, OTP)

        stored = await reload(test_db, WithdrawalRequest, pending.id)
        assert stored.status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_wrong_code_cannot_approve(
        self, test_db, withdrawals, funded, factory, reload
    ) -> None:
        creator, method = await funded()
        admin = await factory.admin()
        pending = await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)

        with pytest.raises(VerificationFailedError):
            await withdrawals.approve(test_db, admin, pending.id, "654321")
        with pytest.raises(VerificationFailedError):
            await withdrawals.approve(test_db, admin, pending.id, None)

        stored = await reload(test_db, WithdrawalRequest, pending.id)
        assert stored.status == "pending"


class TestMarkPaid:
    @pytest.fixture
    def approved(self, test_db, withdrawals, funded, factory):
        async def _approved():
            creator, method = await funded()
            admin = await factory.admin()
            pending = await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)
            await withdrawals.approve(test_db, admin, pending.id, OTP)
            return admin, pending

        return _approved

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_mark_paid(self, test_db, withdrawals, approved) -> None:
        admin, request = await approved()
        paid_at = datetime(2024, 4, 1, 9, 0, tzinfo=timezone.utc)

        result = await withdrawals.mark_paid(
            test_db, admin, request.id, OTP, idempotency_key="pay-1", now=paid_at
        )

        assert not result.idempotent_replay
        assert result.withdrawal.status == "paid"
        assert result.withdrawal.paid_by == admin.user_id
        assert result.withdrawal.idempotency_key == "pay-1"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_retry_with_same_key_is_a_replay(self, test_db, withdrawals, approved) -> None:
        admin, request = await approved()
        first = await withdrawals.mark_paid(test_db, admin, request.id, OTP, idempotency_key="pay-2")

        retry = await withdrawals.mark_paid(test_db, admin, request.id, OTP, idempotency_key="pay-2")

        assert retry.idempotent_replay
        assert retry.withdrawal.id == first.withdrawal.id
        assert retry.withdrawal.paid_at == first.withdrawal.paid_at
        audits = await test_db.scalar(
            select(func.count())
            .select_from(AdminAction)
            .where(AdminAction.action_type == "mark_withdrawal_paid")
        )
        assert audits == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_same_key_pays_once(
        self, test_db, session_factory, withdrawals, approved
    ) -> None:
        admin, request = await approved()

        async def pay():
            async with session_factory() as db:
                return await withdrawals.mark_paid(
                    db, admin, request.id, OTP, idempotency_key="double-click"
                )

        results = await asyncio.gather(pay(), pay(), return_exceptions=True)

        assert not [r for r in results if isinstance(r, Exception)]
        assert sorted(r.idempotent_replay for r in results) == [False, True]
        assert {r.withdrawal.id for r in results} == {request.id}
        audits = await test_db.scalar(
            select(func.count())
            .select_from(AdminAction)
            .where(AdminAction.action_type == "mark_withdrawal_paid")
        )
        assert audits == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_key_reused_for_other_request_conflicts(
        self, test_db, withdrawals, approved
    ) -> None:
        admin, first = await approved()
        _, second = await approved()
        await withdrawals.mark_paid(test_db, admin, first.id, OTP, idempotency_key="pay-3")

        with pytest.raises(ConflictError):
            await withdrawals.mark_paid(test_db, admin, second.id, OTP, idempotency_key="pay-3")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_paid_again_without_key_conflicts(self, test_db, withdrawals, approved) -> None:
        admin, request = await approved()
        await withdrawals.mark_paid(test_db, admin, request.id, OTP)

        with pytest.raises(ConflictError):
            await withdrawals.mark_paid(test_db, admin, request.id, OTP)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pending_cannot_be_paid(self, test_db, withdrawals, funded, factory) -> None:
        creator, method = await funded()
        admin = await factory.admin()
        pending = await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)

        with pytest.raises(ConflictError):
            await withdrawals.mark_paid(test_db, admin, pending.id, OTP, idempotency_key="pay-4")


class TestReject:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reject_leaves_balance(self, test_db, withdrawals, funded, factory, reload) -> None:
        creator, method = await funded()
        admin = await factory.admin()
        pending = await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)

        rejected = await withdrawals.reject(test_db, admin, pending.id, OTP, "  Duplicate request ")

        assert rejected.status == "rejected"
        assert rejected.rejection_reason == "Duplicate request"
        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.available_balance_cents == 2_500_000
        assert stored.total_withdrawn_cents == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reason_required(self, test_db, withdrawals, funded, factory, reload) -> None:
        creator, method = await funded()
        admin = await factory.admin()
        pending = await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)

        with pytest.raises(ValidationError):
            await withdrawals.reject(test_db, admin, pending.id, OTP, "   ")

        stored = await reload(test_db, WithdrawalRequest, pending.id)
        assert stored.status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approved_cannot_be_rejected(self, test_db, withdrawals, funded, factory) -> None:
        creator, method = await funded()
        admin = await factory.admin()
        pending = await withdrawals.request(test_db, creator.id, method.id, TEN_THOUSAND_LKR)
        await withdrawals.approve(test_db, admin, pending.id, OTP)

        with pytest.raises(ConflictError):
            await withdrawals.reject(test_db, admin, pending.id, OTP, "Too late")
