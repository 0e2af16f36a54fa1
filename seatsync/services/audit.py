from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from seatsync.models.models import AuditLog

SYSTEM_ACTOR = "system:sweeper"


async def log_audit(
    db: AsyncSession,
    actor_id: Optional[str],
    action: str,
    object_type: str = None,
    object_id: str = None,
    detail: dict = None,
) -> AuditLog:
    audit = AuditLog(
        actor_id=actor_id,
        action=action,
        object_type=object_type,
        object_id=None if object_id is None else str(object_id),
        detail=detail,
    )
    db.add(audit)
    # do not commit here; the repair it records commits with it
    return audit
