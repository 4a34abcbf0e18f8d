"""
Balance Accumulator - per-creator running totals.

A materialized view over the payment ledger and the withdrawal ledger. All
mutations are single atomic UPDATE statements computed in the database
(``col = col + x``), never read-modify-write in Python.
"""
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Optional

import structlog
from sqlalchemy import case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.core.errors import NotFoundError
from commission_engine.database.models import CreatorProfile

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BalanceSnapshot:
    """Point-in-time view of a creator's running totals."""

    creator_id: uuid.UUID
    lifetime_paid_users: int
    monthly_paid_users: int
    monthly_paid_users_month: Optional[date]
    available_balance_cents: int
    total_withdrawn_cents: int


async def credit_commission(
    db: AsyncSession,
    creator_id: uuid.UUID,
    commission_cents: int,
    counts_as_paid_user: bool,
    payment_month: date,
) -> None:
    """
    Apply a ledger event to a creator's totals.

    The monthly counter follows the newest month seen: an event for the
    stored month increments it, an event for a later month restarts it at 1,
    and a late event for an earlier month leaves it alone.

    Args:
        db: Database session (caller commits)
        creator_id: Attributed creator
        commission_cents: Commission credited to the available balance
        counts_as_paid_user: Whether the event adds a paid user
        payment_month: First day of the event's calendar month

    Raises:
        NotFoundError: If the creator does not exist
    """
    values = {
        CreatorProfile.available_balance_cents: CreatorProfile.available_balance_cents
        + commission_cents,
    }
    if counts_as_paid_user:
        newer_month = or_(
            CreatorProfile.monthly_paid_users_month.is_(None),
            CreatorProfile.monthly_paid_users_month < payment_month,
        )
        values[CreatorProfile.lifetime_paid_users] = CreatorProfile.lifetime_paid_users + 1
        values[CreatorProfile.monthly_paid_users] = case(
            (CreatorProfile.monthly_paid_users_month == payment_month, CreatorProfile.monthly_paid_users + 1),
            (newer_month, 1),
            else_=CreatorProfile.monthly_paid_users,
        )
        values[CreatorProfile.monthly_paid_users_month] = case(
            (newer_month, payment_month),
            else_=CreatorProfile.monthly_paid_users_month,
        )

    result = await db.execute(
        update(CreatorProfile)
        .where(CreatorProfile.id == creator_id)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError("Creator not found", {"creator_id": str(creator_id)})

    logger.debug(
        "creator_balance_credited",
        creator_id=str(creator_id),
        commission_cents=commission_cents,
        counts_as_paid_user=counts_as_paid_user,
    )


async def debit_withdrawal(
    db: AsyncSession,
    creator_id: uuid.UUID,
    amount_cents: int,
    net_amount_cents: int,
) -> bool:
    """
    Conditionally debit an approved withdrawal.

    ``available -= amount WHERE available >= amount`` and
    ``total_withdrawn += net`` in one statement.

    Returns:
        bool: False if the balance was insufficient and nothing changed
    """
    result = await db.execute(
        update(CreatorProfile)
        .where(
            CreatorProfile.id == creator_id,
            CreatorProfile.available_balance_cents >= amount_cents,
        )
        .values(
            available_balance_cents=CreatorProfile.available_balance_cents - amount_cents,
            total_withdrawn_cents=CreatorProfile.total_withdrawn_cents + net_amount_cents,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def get_balance(db: AsyncSession, creator_id: uuid.UUID) -> BalanceSnapshot:
    """
    Read a creator's current totals straight from the database.

    Raises:
        NotFoundError: If the creator does not exist
    """
    row = (
        await db.execute(
            select(
                CreatorProfile.lifetime_paid_users,
                CreatorProfile.monthly_paid_users,
                CreatorProfile.monthly_paid_users_month,
                CreatorProfile.available_balance_cents,
                CreatorProfile.total_withdrawn_cents,
            ).where(CreatorProfile.id == creator_id)
        )
    ).one_or_none()
    if row is None:
        raise NotFoundError("Creator not found", {"creator_id": str(creator_id)})

    return BalanceSnapshot(
        creator_id=creator_id,
        lifetime_paid_users=row.lifetime_paid_users,
        monthly_paid_users=row.monthly_paid_users,
        monthly_paid_users_month=row.monthly_paid_users_month,
        available_balance_cents=row.available_balance_cents,
        total_withdrawn_cents=row.total_withdrawn_cents,
    )
