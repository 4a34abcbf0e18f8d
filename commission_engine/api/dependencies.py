"""
Request dependencies: caller identity and service wiring.

Callers are authenticated upstream; the identity provider forwards the user
id in a header. The payment gateway authenticates with a shared API key.
"""
import hmac
import uuid

import structlog
from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.config import get_settings
from commission_engine.core.errors import AuthorizationError, NotFoundError, VerificationFailedError
from commission_engine.core.ledger import AttributionLedger
from commission_engine.core.notifications import Notifier
from commission_engine.core.reconciliation import ReconciliationEngine
from commission_engine.core.rollup import CMORollup
from commission_engine.core.verification import Actor, load_actor
from commission_engine.core.withdrawals import WithdrawalStateMachine
from commission_engine.database.connection import get_db
from commission_engine.database.models import CreatorProfile

logger = structlog.get_logger(__name__)


async def require_gateway_key(request: Request) -> None:
    """
    Authenticate a payment gateway callback.

    Raises:
        VerificationFailedError: If the API key is missing or wrong
    """
    settings = get_settings()
    provided = request.headers.get(settings.api_key_header, "")
    expected = settings.gateway_api_key.get_secret_value()
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("gateway_key_rejected", path=request.url.path)
        raise VerificationFailedError("Invalid API key")


async def get_actor(request: Request, db: AsyncSession = Depends(get_db)) -> Actor:
    """
    Resolve the authenticated caller and its roles.

    Raises:
        VerificationFailedError: If the user id header is missing or malformed
    """
    raw = request.headers.get(get_settings().user_id_header)
    try:
        user_id = uuid.UUID(raw) if raw else None
    except ValueError:
        user_id = None
    if user_id is None:
        raise VerificationFailedError("Authentication required")
    return await load_actor(db, user_id)


async def require_admin_role(actor: Actor = Depends(get_actor)) -> Actor:
    """
    Admin-only endpoints that need no one-time credential.

    Raises:
        AuthorizationError: If the actor holds no admin role
    """
    if not actor.roles & get_settings().get_admin_roles():
        raise AuthorizationError("Admin access required")
    return actor


async def get_current_creator(
    actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_db)
) -> CreatorProfile:
    """
    Creator profile of the caller.

    Raises:
        NotFoundError: If the caller is not a creator
    """
    creator = await db.scalar(select(CreatorProfile).where(CreatorProfile.user_id == actor.user_id))
    if creator is None:
        raise NotFoundError("Creator profile not found")
    return creator


def get_notifier() -> Notifier:
    return Notifier()


def get_ledger(notifier: Notifier = Depends(get_notifier)) -> AttributionLedger:
    return AttributionLedger(notifier=notifier)


def get_rollup(notifier: Notifier = Depends(get_notifier)) -> CMORollup:
    return CMORollup(notifier=notifier)


def get_withdrawals(notifier: Notifier = Depends(get_notifier)) -> WithdrawalStateMachine:
    return WithdrawalStateMachine(notifier=notifier)


def get_reconciliation(notifier: Notifier = Depends(get_notifier)) -> ReconciliationEngine:
    return ReconciliationEngine(notifier=notifier)
