"""
Tests for the attribution ledger: idempotency, referrer resolution, tiers
and the two-phase write.
"""
import asyncio
import uuid
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import func, select

from commission_engine.core.errors import ValidationError
from commission_engine.core.ledger import ReferralHint
from commission_engine.database.models import (
    AppliedAttribution,
    CreatorProfile,
    DiscountCode,
    InboxMessage,
    OutboxEvent,
    PaymentAttribution,
    UserAttribution,
)

JAN_2024 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
FEB_2024 = datetime(2024, 2, 3, 9, 30, tzinfo=timezone.utc)


async def count_rows(db, model) -> int:
    return await db.scalar(select(func.count()).select_from(model))


class TestRecordPayment:
    """Happy path and validation."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_worked_example_credits_creator(self, test_db, ledger, factory, reload) -> None:
        """LKR 10,000 list price, 10% off, 8% of LKR 9,000 = LKR 720."""
        creator = await factory.creator(referral_code="NIMAL", lifetime_paid_users=10)
        payer_id = uuid.uuid4()

        result = await ledger.record_payment(
            test_db,
            "ord_1001",
            payer_id,
            "enr_1",
            1_000_000,
            900_000,
            ReferralHint(referral_code="nimal"),
            tier="gold",
            paid_at=JAN_2024,
        )

        assert not result.idempotent_replay
        assert result.aggregates_applied is True
        assert result.creator_id == creator.id
        assert result.attribution_source == "referral_code"
        assert result.discount_cents == 100_000
        assert result.commission_rate_bps == 800
        assert result.commission_cents == 72_000
        assert result.payment_month == date(2024, 1, 1)

        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.available_balance_cents == 72_000
        assert stored.lifetime_paid_users == 11
        assert stored.monthly_paid_users == 1
        assert stored.monthly_paid_users_month == date(2024, 1, 1)

        attribution = await test_db.scalar(
            select(UserAttribution).where(UserAttribution.payer_id == payer_id)
        )
        assert attribution.creator_id == creator.id
        assert attribution.referral_source == "referral_code"
        assert attribution.order_id == "ord_1001"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_direct_sale_has_no_commission(self, test_db, ledger) -> None:
        result = await ledger.record_payment(
            test_db, "ord_direct", uuid.uuid4(), None, 500_000, 500_000, paid_at=JAN_2024
        )

        assert result.creator_id is None
        assert result.attribution_source is None
        assert result.commission_cents == 0
        assert result.aggregates_applied is True
        assert await count_rows(test_db, UserAttribution) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_final_above_original_rejected(self, test_db, ledger) -> None:
        with pytest.raises(ValidationError):
            await ledger.record_payment(
                test_db, "ord_bad", uuid.uuid4(), None, 100_000, 100_001
            )
        assert await count_rows(test_db, PaymentAttribution) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_blank_order_id_rejected(self, test_db, ledger) -> None:
        with pytest.raises(ValidationError):
            await ledger.record_payment(test_db, "  ", uuid.uuid4(), None, 100_000, 100_000)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_negative_final_rejected(self, test_db, ledger) -> None:
        with pytest.raises(ValidationError):
            await ledger.record_payment(test_db, "ord_neg", uuid.uuid4(), None, 100_000, -1)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_commission_notification_queued(self, test_db, ledger, factory) -> None:
        creator = await factory.creator(referral_code="AMARA")

        await ledger.record_payment(
            test_db,
            "ord_notify",
            uuid.uuid4(),
            None,
            900_000,
            900_000,
            ReferralHint(referral_code="AMARA"),
            paid_at=JAN_2024,
        )

        message = await test_db.scalar(
            select(InboxMessage).where(InboxMessage.recipient_id == creator.user_id)
        )
        assert message is not None
        assert "Rs. 720.00" in message.body
        event = await test_db.scalar(select(OutboxEvent))
        assert event.event_type == "payment.new"
        assert event.published is False


class TestIdempotency:
    """Exactly-once effects per order id."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_replay_returns_original_without_side_effects(
        self, test_db, ledger, factory, reload
    ) -> None:
        creator = await factory.creator(referral_code="KASUN")
        payer_id = uuid.uuid4()
        args = (test_db, "ord_dup", payer_id, None, 1_000_000, 900_000, ReferralHint("KASUN"))

        first = await ledger.record_payment(*args, paid_at=JAN_2024)
        second = await ledger.record_payment(*args, paid_at=JAN_2024)

        assert not first.idempotent_replay
        assert second.idempotent_replay
        assert second.attribution_id == first.attribution_id
        assert second.commission_cents == first.commission_cents
        assert await count_rows(test_db, PaymentAttribution) == 1

        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.available_balance_cents == 72_000
        assert stored.lifetime_paid_users == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_duplicates_record_once(
        self, session_factory, ledger, factory, test_db, reload
    ) -> None:
        """Independent sessions confirming the same order race on the unique index."""
        creator = await factory.creator(referral_code="RACE")
        payer_id = uuid.uuid4()

        async def confirm():
            async with session_factory() as db:
                return await ledger.record_payment(
                    db,
                    "ord_race",
                    payer_id,
                    None,
                    1_000_000,
                    900_000,
                    ReferralHint(referral_code="RACE"),
                    paid_at=JAN_2024,
                )

        results = await asyncio.gather(*(confirm() for _ in range(5)))

        fresh = [r for r in results if not r.idempotent_replay]
        assert len(fresh) == 1
        assert len({r.attribution_id for r in results}) == 1
        assert await count_rows(test_db, PaymentAttribution) == 1

        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.available_balance_cents == 72_000
        assert stored.lifetime_paid_users == 1


class TestReferrerResolution:
    """Referral code first, then discount code, then direct."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_referral_code_wins_over_discount_code(self, test_db, ledger, factory) -> None:
        referrer = await factory.creator(referral_code="FIRST")
        other = await factory.creator(referral_code="SECOND")
        await factory.discount_code(other, code="SECOND10")

        result = await ledger.record_payment(
            test_db,
            "ord_both",
            uuid.uuid4(),
            None,
            1_000_000,
            900_000,
            ReferralHint(referral_code="FIRST", discount_code="SECOND10"),
            paid_at=JAN_2024,
        )

        assert result.creator_id == referrer.id
        assert result.discount_code_id is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_discount_code_attributes_and_counts(self, test_db, ledger, factory, reload) -> None:
        creator = await factory.creator()
        code = await factory.discount_code(creator, code="SAVE10")

        result = await ledger.record_payment(
            test_db,
            "ord_code",
            uuid.uuid4(),
            None,
            1_000_000,
            900_000,
            ReferralHint(discount_code="save10"),
            paid_at=JAN_2024,
        )

        assert result.creator_id == creator.id
        assert result.discount_code_id == code.id
        assert result.attribution_source == "discount_code"

        stored = await reload(test_db, DiscountCode, code.id)
        assert stored.usage_count == 1
        assert stored.paid_conversions == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_inactive_discount_code_is_direct_sale(self, test_db, ledger, factory) -> None:
        creator = await factory.creator()
        await factory.discount_code(creator, code="OLD10", is_active=False)

        result = await ledger.record_payment(
            test_db,
            "ord_old_code",
            uuid.uuid4(),
            None,
            1_000_000,
            900_000,
            ReferralHint(discount_code="OLD10"),
            paid_at=JAN_2024,
        )

        assert result.creator_id is None
        assert result.commission_cents == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_referral_code_falls_back_to_discount_code(
        self, test_db, ledger, factory
    ) -> None:
        creator = await factory.creator()
        await factory.discount_code(creator, code="BACKUP")

        result = await ledger.record_payment(
            test_db,
            "ord_fallback",
            uuid.uuid4(),
            None,
            1_000_000,
            1_000_000,
            ReferralHint(referral_code="NOPE", discount_code="BACKUP"),
            paid_at=JAN_2024,
        )

        assert result.creator_id == creator.id
        assert result.attribution_source == "discount_code"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_first_attribution_is_permanent(self, test_db, ledger, factory) -> None:
        """A later purchase through another creator never moves the payer."""
        first = await factory.creator(referral_code="ORIGINAL")
        second = await factory.creator(referral_code="LATECOMER")
        payer_id = uuid.uuid4()

        await ledger.record_payment(
            test_db, "ord_a", payer_id, None, 900_000, 900_000,
            ReferralHint(referral_code="ORIGINAL"), paid_at=JAN_2024,
        )
        later = await ledger.record_payment(
            test_db, "ord_b", payer_id, None, 900_000, 900_000,
            ReferralHint(referral_code="LATECOMER"), paid_at=FEB_2024,
        )

        assert later.creator_id == second.id
        assert later.aggregates_applied is True
        attributions = (
            await test_db.execute(select(UserAttribution).where(UserAttribution.payer_id == payer_id))
        ).scalars().all()
        assert len(attributions) == 1
        assert attributions[0].creator_id == first.id
        assert attributions[0].order_id == "ord_a"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_upgrade_credits_permanent_creator(self, test_db, ledger, factory, reload) -> None:
        creator = await factory.creator(referral_code="HOME")
        await factory.creator(referral_code="AWAY")
        payer_id = uuid.uuid4()

        await ledger.record_payment(
            test_db, "ord_new", payer_id, None, 900_000, 900_000,
            ReferralHint(referral_code="HOME"), paid_at=JAN_2024,
        )
        upgrade = await ledger.record_payment(
            test_db, "ord_up", payer_id, None, 300_000, 300_000,
            ReferralHint(referral_code="AWAY"), payment_kind="upgrade", paid_at=FEB_2024,
        )

        assert upgrade.creator_id == creator.id
        assert upgrade.attribution_source == "user_attribution"
        assert upgrade.counts_as_paid_user is False
        assert upgrade.commission_cents == 24_000

        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.lifetime_paid_users == 1
        assert stored.available_balance_cents == 72_000 + 24_000


class TestTiers:
    """Creator rate from the stored count before the event."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bonus_starts_with_the_payment_after_the_500th(
        self, test_db, ledger, factory, reload
    ) -> None:
        creator = await factory.creator(referral_code="STAR", lifetime_paid_users=499)

        at_499 = await ledger.record_payment(
            test_db, "ord_499", uuid.uuid4(), None, 900_000, 900_000,
            ReferralHint(referral_code="STAR"), paid_at=JAN_2024,
        )
        at_500 = await ledger.record_payment(
            test_db, "ord_500", uuid.uuid4(), None, 900_000, 900_000,
            ReferralHint(referral_code="STAR"), paid_at=JAN_2024,
        )

        assert at_499.commission_rate_bps == 800
        assert at_499.commission_cents == 72_000
        assert at_500.commission_rate_bps == 1200
        assert at_500.commission_cents == 108_000

        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.lifetime_paid_users == 501


class TestMonthlyCounter:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_new_month_restarts_and_late_event_is_ignored(
        self, test_db, ledger, factory, reload
    ) -> None:
        creator = await factory.creator(referral_code="MONTHLY")
        hint = ReferralHint(referral_code="MONTHLY")

        for order_id, paid_at in (("ord_j1", JAN_2024), ("ord_j2", JAN_2024), ("ord_f1", FEB_2024)):
            await ledger.record_payment(
                test_db, order_id, uuid.uuid4(), None, 100_000, 100_000, hint, paid_at=paid_at
            )

        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.monthly_paid_users == 1
        assert stored.monthly_paid_users_month == date(2024, 2, 1)

        # Late confirmation for January
        await ledger.record_payment(
            test_db, "ord_j3", uuid.uuid4(), None, 100_000, 100_000, hint, paid_at=JAN_2024
        )
        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.monthly_paid_users == 1
        assert stored.monthly_paid_users_month == date(2024, 2, 1)
        assert stored.lifetime_paid_users == 4


class TestAggregateFailure:
    """The ledger row survives a failed second phase."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failure_keeps_ledger_row_and_reconciliation_repairs(
        self, test_db, ledger, reconciliation, factory, reload, monkeypatch
    ) -> None:
        creator = await factory.creator(referral_code="FRAGILE")
        payer_id = uuid.uuid4()

        async def broken_credit(*args, **kwargs):
            raise RuntimeError("connection reset")

        monkeypatch.setattr("commission_engine.core.ledger.credit_commission", broken_credit)

        result = await ledger.record_payment(
            test_db, "ord_fragile", payer_id, None, 1_000_000, 900_000,
            ReferralHint(referral_code="FRAGILE"), paid_at=JAN_2024,
        )

        assert result.aggregates_applied is False
        assert result.commission_cents == 72_000
        assert await count_rows(test_db, PaymentAttribution) == 1
        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.available_balance_cents == 0
        assert await count_rows(test_db, UserAttribution) == 0

        monkeypatch.undo()
        report = await reconciliation.recompute_all(
            test_db, now=datetime(2024, 1, 20, tzinfo=timezone.utc)
        )

        assert report.creators_drifted == 1
        assert report.attributions_restored == 1
        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.available_balance_cents == 72_000
        assert stored.lifetime_paid_users == 1
        assert stored.monthly_paid_users == 1

        # A replay after repair is still a no-op
        replay = await ledger.record_payment(
            test_db, "ord_fragile", payer_id, None, 1_000_000, 900_000,
            ReferralHint(referral_code="FRAGILE"), paid_at=JAN_2024,
        )
        assert replay.idempotent_replay
        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.available_balance_cents == 72_000


class TestReconciliationBetweenPhases:
    """A run landing between the two phases counts the payment once."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_second_phase_claims_the_row(self, test_db, ledger, factory) -> None:
        await factory.creator(referral_code="CLAIM")

        result = await ledger.record_payment(
            test_db, "ord_claim", uuid.uuid4(), None, 1_000_000, 900_000,
            ReferralHint(referral_code="CLAIM"), paid_at=JAN_2024,
        )

        applied = await test_db.get(AppliedAttribution, result.attribution_id)
        assert applied.applied_by == "payment"

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_run_before_second_phase_is_not_double_counted(
        self, test_db, session_factory, ledger, reconciliation, factory, reload, monkeypatch
    ) -> None:
        creator = await factory.creator(referral_code="GAP")
        apply_aggregates = ledger._apply_aggregates

        async def reconcile_then_apply(db, row, referrer):
            async with session_factory() as other:
                await reconciliation.recompute_all(
                    other, now=datetime(2024, 1, 20, tzinfo=timezone.utc)
                )
            return await apply_aggregates(db, row, referrer)

        monkeypatch.setattr(ledger, "_apply_aggregates", reconcile_then_apply)

        result = await ledger.record_payment(
            test_db, "ord_gap", uuid.uuid4(), None, 1_000_000, 900_000,
            ReferralHint(referral_code="GAP"), paid_at=JAN_2024,
        )

        assert result.aggregates_applied is True
        stored = await reload(test_db, CreatorProfile, creator.id)
        assert stored.available_balance_cents == 72_000
        assert stored.lifetime_paid_users == 1
        assert stored.monthly_paid_users == 1
        applied = await reload(test_db, AppliedAttribution, result.attribution_id)
        assert applied.applied_by == "reconciliation"
