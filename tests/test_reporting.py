"""Tests for revenue statistics."""
import uuid
from datetime import date, datetime, timezone

import pytest

from commission_engine.core.errors import ValidationError
from commission_engine.core.reporting import revenue_stats

NOW = datetime(2024, 3, 20, tzinfo=timezone.utc)


class TestRevenueStats:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_monthly_series_with_gaps(self, test_db, ledger) -> None:
        for order_id, paid_at, amount in (
            ("ord_old", datetime(2023, 6, 1, tzinfo=timezone.utc), 400_000),
            ("ord_jan", datetime(2024, 1, 9, tzinfo=timezone.utc), 900_000),
            ("ord_mar_1", datetime(2024, 3, 2, tzinfo=timezone.utc), 900_000),
            ("ord_mar_2", datetime(2024, 3, 3, tzinfo=timezone.utc), 300_000),
        ):
            await ledger.record_payment(
                test_db, order_id, uuid.uuid4(), None, amount, amount, paid_at=paid_at
            )

        stats = await revenue_stats(test_db, months=3, now=NOW)

        assert stats.total_revenue_cents == 2_500_000
        assert stats.this_month_revenue_cents == 1_200_000
        assert [(m.month, m.revenue_cents, m.payments) for m in stats.monthly] == [
            (date(2024, 1, 1), 900_000, 1),
            (date(2024, 2, 1), 0, 0),
            (date(2024, 3, 1), 1_200_000, 2),
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_empty_ledger(self, test_db) -> None:
        stats = await revenue_stats(test_db, months=1, now=NOW)

        assert stats.total_revenue_cents == 0
        assert stats.this_month_revenue_cents == 0
        assert len(stats.monthly) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("months", [0, 37])
    async def test_months_out_of_range(self, test_db, months: int) -> None:
        with pytest.raises(ValidationError):
            await revenue_stats(test_db, months=months, now=NOW)
