"""
Audit logging helpers.
"""
from typing import Any, Dict, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.features.audit.models import AuditLog
from taskboard.utils import get_logger


log = get_logger(__name__)


async def record_audit(
    db: AsyncSession,
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    organisation_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    actor_id: Optional[str] = None,
) -> AuditLog:
    """
    Add an audit log entry to the current unit of work.

    The entry is flushed but not committed; it becomes durable together with
    the change it records.

    Args:
        db: Database session
        action: Action performed (e.g., "create_override", "revert", "assign")
        resource_type: Type of resource (e.g., "role", "role_template")
        resource_id: ID of the resource
        organisation_id: Organisation context
        details: Additional details
        actor_id: Subject performing the action
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        organisation_id=organisation_id,
        details=details,
    )
    db.add(audit_log)
    await db.flush()
    
    log.info(
        f"Audit: actor={actor_id} action={action} resource={resource_type}:{resource_id} org={organisation_id}"
    )
    
    return audit_log


async def list_audit_logs(
    db: AsyncSession,
    organisation_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    limit: int = 100,
) -> list[AuditLog]:
    """Most recent audit entries, newest first."""
    stmt = select(AuditLog)
    if organisation_id:
        stmt = stmt.where(AuditLog.organisation_id == organisation_id)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
