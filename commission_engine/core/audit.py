"""Audit trail for privileged actions."""
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.core.verification import Actor
from commission_engine.database.models import AdminAction


def record_admin_action(
    db: AsyncSession,
    actor: Actor,
    action_type: str,
    target_type: str,
    target_id: str,
    details: Optional[Dict[str, Any]] = None,
) -> AdminAction:
    """
    Stage an audit row in the caller's transaction.

    The row commits or rolls back together with the action it describes.
    """
    action = AdminAction(
        admin_id=actor.user_id,
        action_type=action_type,
        target_type=target_type,
        target_id=target_id,
        details=details or {},
    )
    db.add(action)
    return action
