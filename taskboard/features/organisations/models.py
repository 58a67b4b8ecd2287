"""
Organisation models.

Organisations are the tenants of the platform. Subjects (users today) join
organisations through the organisation_members table.
"""
from datetime import datetime
from sqlalchemy import String, ForeignKey, Table, Column, Boolean, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from taskboard.core.database.base import Base, TimestampMixin, generate_ulid


# Membership of subjects in organisations
organisation_members = Table(
    "organisation_members",
    Base.metadata,
    Column("organisation_id", String(26), ForeignKey("organisations.id", ondelete="CASCADE"), primary_key=True),
    Column("subject_id", String(64), primary_key=True),
    Column("subject_type", String(50), primary_key=True),
    Column("joined_at", DateTime(timezone=True), nullable=False, default=datetime.now),
)


class Organisation(Base, TimestampMixin):
    """
    Organisation model representing a tenant.
    
    Users can belong to multiple organisations and hold different roles in each.
    """
    __tablename__ = "organisations"
    
    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    
    def __repr__(self) -> str:
        return f"<Organisation(id={self.id}, name={self.name!r})>"
