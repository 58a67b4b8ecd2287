"""
Permission and PermissionOverride models.

Permissions are flat "resource.action" identifiers. They are append-only:
templates keep referencing them, so there is no delete path.
"""
from sqlalchemy import String, ForeignKey, Boolean, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from taskboard.core.database.base import Base, TimestampMixin, generate_ulid


class Permission(Base, TimestampMixin):
    """
    Permission model identifying a grantable action.
    
    Examples:
    - name="project.create", category="Project"
    - name="manage-roles", category="General"
    """
    __tablename__ = "permissions"
    
    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    display_name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    
    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, name={self.name!r})>"


class PermissionOverride(Base, TimestampMixin):
    """
    Direct grant (grant=True) or denial (grant=False) of one permission to a
    subject inside one organisation. At most one row per
    (subject, permission, organisation); writing replaces the previous row.
    """
    __tablename__ = "permission_overrides"
    __table_args__ = (
        UniqueConstraint(
            "subject_id", "subject_type", "permission_id", "organisation_id",
            name="uq_permission_overrides_subject_permission_org",
        ),
    )
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subject_type: Mapped[str] = mapped_column(String(50), nullable=False)
    permission_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
    )
    organisation_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("organisations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    grant: Mapped[bool] = mapped_column(Boolean, nullable=False)
    
    permission: Mapped["Permission"] = relationship("Permission", lazy="selectin")
    
    def __repr__(self) -> str:
        kind = "grant" if self.grant else "deny"
        return f"<PermissionOverride({kind} {self.permission_id} to {self.subject_type}:{self.subject_id} in {self.organisation_id})>"
