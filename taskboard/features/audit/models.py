"""
Audit log model.

Rows are written in the same unit of work as the change they describe, so a
rolled-back operation leaves no audit entry behind.
"""
from typing import Any, Dict
from sqlalchemy import String, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column

from taskboard.core.database.base import Base, TimestampMixin, generate_ulid


class AuditLog(Base, TimestampMixin):
    """
    Audit log for tracking RBAC changes.
    
    Tracks who did what, to which resource, in which organisation.
    """
    __tablename__ = "audit_logs"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    # Actor (subject id of the caller, when known)
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    
    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    
    organisation_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("organisations.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    
    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, actor_id={self.actor_id}, action={self.action}, resource={self.resource_type})>"
