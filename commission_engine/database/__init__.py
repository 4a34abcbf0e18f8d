"""Database package for the commission engine."""
from .connection import create_session_factory, get_db, get_session_factory, init_db
from .models import (
    AdminAction,
    AppliedAttribution,
    Base,
    CMOPayout,
    CMOPayoutSettlement,
    CMOProfile,
    CreatorProfile,
    DiscountCode,
    InboxMessage,
    OutboxEvent,
    PaymentAttribution,
    ReconciliationRun,
    UserAttribution,
    UserRole,
    WithdrawalMethod,
    WithdrawalRequest,
)

__all__ = [
    "AdminAction",
    "AppliedAttribution",
    "Base",
    "CMOPayout",
    "CMOPayoutSettlement",
    "CMOProfile",
    "CreatorProfile",
    "DiscountCode",
    "InboxMessage",
    "OutboxEvent",
    "PaymentAttribution",
    "ReconciliationRun",
    "UserAttribution",
    "UserRole",
    "WithdrawalMethod",
    "WithdrawalRequest",
    "create_session_factory",
    "get_db",
    "get_session_factory",
    "init_db",
]
