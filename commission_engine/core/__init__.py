"""Settlement core: ledger, aggregates, withdrawals and reconciliation."""
from .commission import CommissionPolicy, apply_basis_points
from .errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    SettlementError,
    ValidationError,
    VerificationFailedError,
)
from .ledger import AttributionLedger, AttributionResult, ReferralHint
from .reconciliation import GatewayPayment, ReconciliationEngine
from .rollup import CMORollup
from .verification import Actor, PrivilegeGuard, StaticSecretVerifier
from .withdrawals import WithdrawalStateMachine

__all__ = [
    "Actor",
    "AttributionLedger",
    "AttributionResult",
    "AuthorizationError",
    "CMORollup",
    "CommissionPolicy",
    "ConflictError",
    "GatewayPayment",
    "NotFoundError",
    "PersistenceError",
    "PrivilegeGuard",
    "ReconciliationEngine",
    "ReferralHint",
    "SettlementError",
    "StaticSecretVerifier",
    "ValidationError",
    "VerificationFailedError",
    "WithdrawalStateMachine",
    "apply_basis_points",
]
