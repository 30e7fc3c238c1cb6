from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.models.audit_log import AuditLog
from marketplace.models.base import Base
from marketplace.services.redaction import redact_payload


async def audit(
    db: AsyncSession,
    *,
    actor: str | None,
    action: str,
    target: Base,
    detail: dict[str, Any] | None = None,
) -> AuditLog:
    """
    Queue an audit row for `target` in the caller's transaction, so it is
    committed (or rolled back) together with the change it describes.
    """
    row = AuditLog(
        actor=actor,
        action=action,
        target_type=target.__tablename__,
        target_id=getattr(target, "id", None),
        detail=redact_payload(detail or {}),
    )
    db.add(row)
    return row
