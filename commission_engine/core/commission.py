"""
Commission Calculator - pure, stateless rate and amount computation.

Amounts are integer cents and rates are basis points (1 bps = 0.01%).
Every computed amount is rounded ROUND_HALF_UP to the cent.

Tiers are recomputed from the counts passed in for every event; nothing here
is cached on the referrer, so a threshold crossing applies immediately.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from commission_engine.config import Settings, get_settings

BPS_DENOMINATOR = Decimal("10000")


def apply_basis_points(amount_cents: int, bps: int) -> int:
    """
    Apply basis points to an amount in cents.

    Example: apply_basis_points(900000, 800) == 72000
    """
    value = Decimal(amount_cents) * Decimal(bps) / BPS_DENOMINATOR
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class CMOCommission:
    """CMO commission for a single ledger event."""

    base_cents: int
    bonus_cents: int
    bonus_applied: bool

    @property
    def total_cents(self) -> int:
        return self.base_cents + self.bonus_cents


@dataclass(frozen=True)
class WithdrawalFee:
    """Fee breakdown for a withdrawal amount."""

    amount_cents: int
    fee_bps: int
    fee_cents: int

    @property
    def net_cents(self) -> int:
        return self.amount_cents - self.fee_cents


@dataclass(frozen=True)
class CommissionPolicy:
    """
    Commission tiers for creators and CMOs.

    Creator: base rate until the lifetime paid-user count *before* the event
    reaches the threshold, bonus rate from then on (499 -> base, 500 -> bonus).

    CMO: base rate on the gross amount of every subordinate payment, plus a
    bonus rate on the whole amount once the subordinates' year-to-date
    paid-user count *including* the triggering payment reaches the threshold.
    """

    creator_base_rate_bps: int = 800
    creator_bonus_rate_bps: int = 1200
    creator_bonus_threshold: int = 500
    cmo_base_rate_bps: int = 800
    cmo_bonus_rate_bps: int = 500
    cmo_bonus_threshold: int = 280
    withdrawal_fee_bps: int = 300

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> CommissionPolicy:
        """Build the policy from application settings."""
        settings = settings or get_settings()
        return cls(
            creator_base_rate_bps=settings.creator_base_rate_bps,
            creator_bonus_rate_bps=settings.creator_bonus_rate_bps,
            creator_bonus_threshold=settings.creator_bonus_threshold,
            cmo_base_rate_bps=settings.cmo_base_rate_bps,
            cmo_bonus_rate_bps=settings.cmo_bonus_rate_bps,
            cmo_bonus_threshold=settings.cmo_bonus_threshold,
            withdrawal_fee_bps=settings.withdrawal_fee_bps,
        )

    def creator_rate_bps(self, lifetime_paid_users: int) -> int:
        """Rate for a creator whose stored lifetime count is ``lifetime_paid_users``."""
        if lifetime_paid_users >= self.creator_bonus_threshold:
            return self.creator_bonus_rate_bps
        return self.creator_base_rate_bps

    def creator_commission(self, final_amount_cents: int, lifetime_paid_users: int) -> tuple[int, int]:
        """
        Commission owed to a creator for one payment.

        Returns:
            tuple[int, int]: (rate in bps, commission in cents)
        """
        rate_bps = self.creator_rate_bps(lifetime_paid_users)
        return rate_bps, apply_basis_points(final_amount_cents, rate_bps)

    def cmo_commission(self, gross_amount_cents: int, ytd_paid_users: int) -> CMOCommission:
        """
        Commission owed to a CMO for one subordinate payment.

        Args:
            gross_amount_cents: Final amount of the payment
            ytd_paid_users: Subordinates' paid users this calendar year,
                counting the triggering payment

        Returns:
            CMOCommission: base and bonus parts
        """
        base = apply_basis_points(gross_amount_cents, self.cmo_base_rate_bps)
        bonus_applied = ytd_paid_users >= self.cmo_bonus_threshold
        bonus = apply_basis_points(gross_amount_cents, self.cmo_bonus_rate_bps) if bonus_applied else 0
        return CMOCommission(base_cents=base, bonus_cents=bonus, bonus_applied=bonus_applied)

    def withdrawal_fee(self, amount_cents: int) -> WithdrawalFee:
        """Fee and net payable for a withdrawal amount."""
        return WithdrawalFee(
            amount_cents=amount_cents,
            fee_bps=self.withdrawal_fee_bps,
            fee_cents=apply_basis_points(amount_cents, self.withdrawal_fee_bps),
        )
