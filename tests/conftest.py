"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file so independent sessions can
race against each other the way concurrent requests do.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./commission_engine_test.db")
os.environ.setdefault("GATEWAY_API_KEY", "test-gateway-key")
os.environ.setdefault("WITHDRAWAL_OTP_CODE", "123456")
os.environ.setdefault("APP_ENV", "test")

import uuid  # noqa: E402
from datetime import date  # noqa: E402
from typing import Any, AsyncGenerator, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from commission_engine.config import Settings  # noqa: E402
from commission_engine.core.commission import CommissionPolicy  # noqa: E402
from commission_engine.core.ledger import AttributionLedger  # noqa: E402
from commission_engine.core.notifications import Notifier  # noqa: E402
from commission_engine.core.reconciliation import ReconciliationEngine  # noqa: E402
from commission_engine.core.rollup import CMORollup  # noqa: E402
from commission_engine.core.verification import Actor, PrivilegeGuard  # noqa: E402
from commission_engine.core.withdrawals import WithdrawalStateMachine  # noqa: E402
from commission_engine.database.connection import create_session_factory  # noqa: E402
from commission_engine.database.models import (  # noqa: E402
    Base,
    CMOProfile,
    CreatorProfile,
    DiscountCode,
    UserRole,
    WithdrawalMethod,
)

OTP_CODE = "123456"


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        gateway_api_key="test-gateway-key",
        withdrawal_otp_code=OTP_CODE,
        app_name="commission-engine-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path: Any) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Session factory over a fresh database file."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def policy() -> CommissionPolicy:
    return CommissionPolicy()


@pytest.fixture
def notifier(session_factory: async_sessionmaker[AsyncSession]) -> Notifier:
    return Notifier(session_factory=session_factory)


@pytest.fixture
def guard(test_settings: Settings) -> PrivilegeGuard:
    return PrivilegeGuard(settings=test_settings)


@pytest.fixture
def rollup(policy: CommissionPolicy, guard: PrivilegeGuard, notifier: Notifier) -> CMORollup:
    return CMORollup(policy=policy, guard=guard, notifier=notifier)


@pytest.fixture
def ledger(policy: CommissionPolicy, rollup: CMORollup, notifier: Notifier) -> AttributionLedger:
    return AttributionLedger(policy=policy, rollup=rollup, notifier=notifier)


@pytest.fixture
def withdrawals(
    policy: CommissionPolicy,
    guard: PrivilegeGuard,
    notifier: Notifier,
    test_settings: Settings,
) -> WithdrawalStateMachine:
    return WithdrawalStateMachine(
        policy=policy, guard=guard, notifier=notifier, settings=test_settings
    )


@pytest.fixture
def reconciliation(
    policy: CommissionPolicy, ledger: AttributionLedger, notifier: Notifier
) -> ReconciliationEngine:
    return ReconciliationEngine(policy=policy, ledger=ledger, notifier=notifier)


class Factory:
    """Creates committed reference rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._counter = 0

    def _next_code(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{self._counter:03d}"

    async def _save(self, *rows: Any) -> None:
        async with self.session_factory() as db:
            db.add_all(rows)
            await db.commit()

    async def cmo(self) -> CMOProfile:
        cmo = CMOProfile(
            id=uuid.uuid4(),
            user_id=uuid.uuid4(),
            display_name="Regional Manager",
            referral_code=self._next_code("CMO"),
        )
        await self._save(cmo)
        return cmo

    async def creator(
        self,
        referral_code: Optional[str] = None,
        cmo_id: Optional[uuid.UUID] = None,
        lifetime_paid_users: int = 0,
        available_balance_cents: int = 0,
        monthly_paid_users: int = 0,
        monthly_paid_users_month: Optional[date] = None,
        is_active: bool = True,
    ) -> CreatorProfile:
        creator = CreatorProfile(
            id=uuid.uuid4(),
            user_id=uuid.uuid4(),
            cmo_id=cmo_id,
            display_name="Creator",
            referral_code=referral_code or self._next_code("CRE"),
            is_active=is_active,
            lifetime_paid_users=lifetime_paid_users,
            monthly_paid_users=monthly_paid_users,
            monthly_paid_users_month=monthly_paid_users_month,
            available_balance_cents=available_balance_cents,
            total_withdrawn_cents=0,
        )
        await self._save(creator)
        return creator

    async def discount_code(
        self, creator: CreatorProfile, code: Optional[str] = None, is_active: bool = True
    ) -> DiscountCode:
        discount = DiscountCode(
            id=uuid.uuid4(),
            code=code or self._next_code("SAVE"),
            creator_id=creator.id,
            discount_bps=1000,
            is_active=is_active,
        )
        await self._save(discount)
        return discount

    async def method(self, creator: CreatorProfile) -> WithdrawalMethod:
        method = WithdrawalMethod(
            id=uuid.uuid4(),
            creator_id=creator.id,
            method_type="bank",
            account_label="Commercial Bank ****1234",
        )
        await self._save(method)
        return method

    async def admin(self, role: str = "admin") -> Actor:
        user_id = uuid.uuid4()
        await self._save(UserRole(user_id=user_id, role=role))
        return Actor(user_id=user_id, roles=frozenset({role}))


@pytest.fixture
def factory(session_factory: async_sessionmaker[AsyncSession]) -> Factory:
    return Factory(session_factory)


async def _reload(db: AsyncSession, model: Any, pk: Any) -> Any:
    return await db.get(model, pk, populate_existing=True)


@pytest.fixture
def reload() -> Any:
    """Fetch a row bypassing the identity map."""
    return _reload
