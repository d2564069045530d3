from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from checkout_portal.core.logging import get_logger
from checkout_portal.models.audit import AuditCategory, AuditLog

logger = get_logger(__name__)


def record_audit(
    session: AsyncSession,
    *,
    action: str,
    category: AuditCategory,
    checkout_session_id: str | None = None,
    actor: str = "system",
    details: dict[str, Any] | None = None,
    critical: bool = False,
) -> AuditLog:
    entry = AuditLog(
        checkout_session_id=checkout_session_id,
        actor=actor,
        action=action,
        category=category,
        details=details or {},
        critical=critical,
    )
    session.add(entry)
    return entry


def record_operator_alert(
    session: AsyncSession,
    *,
    action: str,
    checkout_session_id: str | None = None,
    actor: str = "system",
    **details: Any,
) -> AuditLog:
    """Persist an alert for operators and emit it at error level."""
    logger.error("operator.alert", action=action, checkout_session_id=checkout_session_id, **details)
    return record_audit(
        session,
        action=action,
        category=AuditCategory.OPERATOR_ALERT,
        checkout_session_id=checkout_session_id,
        actor=actor,
        details={key: value for key, value in details.items() if value is not None},
        critical=True,
    )
