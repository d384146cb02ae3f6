import logging
from typing import Any

from sqlmodel import Session

from .models import AuditAction, AuditLog

logger = logging.getLogger(__name__)


def log_audit(
    session: Session,
    client_id: int,
    action: AuditAction,
    actor_id: int | None = None,
    order_id: int | None = None,
    details: dict[str, Any] | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's session; it commits with the caller's change."""
    entry = AuditLog(
        client_id=client_id,
        action=action,
        actor_id=actor_id,
        order_id=order_id,
        details=details,
    )
    session.add(entry)
    logger.info(f"Audit {action.value} client={client_id} order={order_id} actor={actor_id}")
    return entry
