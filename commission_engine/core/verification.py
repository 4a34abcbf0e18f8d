"""
Privilege checks and secondary credential verification.

Privileged withdrawal and payout actions need two things: an admin role and a
one-time credential delivered out of band. The credential check sits behind
``CredentialVerifier`` so the static shared secret can be replaced by a TOTP
or hardware-key scheme without touching withdrawal logic.
"""
from __future__ import annotations

import hmac
import uuid
from dataclasses import dataclass, field
from typing import Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.config import Settings, get_settings
from commission_engine.core.errors import AuthorizationError, VerificationFailedError
from commission_engine.database.models import UserRole

logger = structlog.get_logger(__name__)


class CredentialVerifier(Protocol):
    """Capability: verify a one-time credential."""

    def verify(self, credential: str) -> bool:
        """Return True if the credential is currently valid."""
        ...


class StaticSecretVerifier:
    """Compares the credential with a shared secret from the secret store."""

    def __init__(self, secret: str | None):
        self._secret = secret.strip() if secret else None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> StaticSecretVerifier:
        settings = settings or get_settings()
        return cls(settings.withdrawal_otp_code.get_secret_value())

    def verify(self, credential: str) -> bool:
        if not self._secret:
            logger.error("verification_secret_not_configured")
            return False
        if not credential:
            return False
        return hmac.compare_digest(credential.strip().encode(), self._secret.encode())


@dataclass(frozen=True)
class Actor:
    """Authenticated caller and its granted roles."""

    user_id: uuid.UUID
    roles: frozenset[str] = field(default_factory=frozenset)


async def load_actor(db: AsyncSession, user_id: uuid.UUID) -> Actor:
    """
    Load an actor with the roles granted in ``user_roles``.

    Args:
        db: Database session
        user_id: Authenticated user id

    Returns:
        Actor: caller with roles
    """
    result = await db.execute(select(UserRole.role).where(UserRole.user_id == user_id))
    return Actor(user_id=user_id, roles=frozenset(result.scalars().all()))


class PrivilegeGuard:
    """Enforces admin role plus secondary verification for privileged actions."""

    def __init__(
        self,
        verifier: CredentialVerifier | None = None,
        admin_roles: frozenset[str] | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.verifier = verifier or StaticSecretVerifier.from_settings(settings)
        self.admin_roles = admin_roles or settings.get_admin_roles()

    def require_admin(self, actor: Actor, verification_code: str | None, action: str) -> None:
        """
        Check privilege, then the one-time credential.

        Raises:
            AuthorizationError: If the actor holds no admin role
            VerificationFailedError: If the credential is missing or wrong
        """
        if not actor.roles & self.admin_roles:
            logger.warning("privileged_action_denied", action=action, user_id=str(actor.user_id))
            raise AuthorizationError("Admin access required")

        if not verification_code or not self.verifier.verify(verification_code):
            logger.warning(
                "privileged_action_verification_failed",
                action=action,
                user_id=str(actor.user_id),
            )
            raise VerificationFailedError("Invalid verification code")
