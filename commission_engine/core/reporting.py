"""Revenue statistics read from the payment ledger."""
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.core.errors import ValidationError
from commission_engine.core.periods import month_start, shift_months, utcnow
from commission_engine.database.models import PaymentAttribution


@dataclass
class MonthlyRevenue:
    month: date
    revenue_cents: int
    payments: int


@dataclass
class RevenueStats:
    total_revenue_cents: int
    this_month_revenue_cents: int
    monthly: List[MonthlyRevenue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def revenue_stats(
    db: AsyncSession, months: int = 6, now: Optional[datetime] = None
) -> RevenueStats:
    """
    Gross revenue per month for the last ``months`` months, oldest first.

    Months with no payments are reported as zero.

    Args:
        db: Database session
        months: Number of months including the current one (1-36)
        now: Clock override

    Returns:
        RevenueStats: all-time total, current month and monthly series
    """
    if not 1 <= months <= 36:
        raise ValidationError("Months must be between 1 and 36")

    current = month_start(now or utcnow())
    first = shift_months(current, -(months - 1))

    rows = (
        await db.execute(
            select(
                PaymentAttribution.payment_month,
                func.coalesce(func.sum(PaymentAttribution.final_amount_cents), 0).label("revenue"),
                func.count(PaymentAttribution.id).label("payments"),
            )
            .where(PaymentAttribution.payment_month >= first)
            .group_by(PaymentAttribution.payment_month)
        )
    ).all()
    by_month = {row.payment_month: (int(row.revenue), int(row.payments)) for row in rows}

    total = await db.scalar(
        select(func.coalesce(func.sum(PaymentAttribution.final_amount_cents), 0))
    )

    monthly = []
    for offset in range(months):
        month = shift_months(first, offset)
        revenue, payments = by_month.get(month, (0, 0))
        monthly.append(MonthlyRevenue(month=month, revenue_cents=revenue, payments=payments))

    return RevenueStats(
        total_revenue_cents=int(total or 0),
        this_month_revenue_cents=by_month.get(current, (0, 0))[0],
        monthly=monthly,
    )
