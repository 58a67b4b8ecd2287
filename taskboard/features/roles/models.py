"""
RoleTemplate, Role, and role assignment models.

A RoleTemplate is a named bundle of permissions, either system-wide
(is_system, no organisation) or owned by one organisation (custom role or
override of a system template). A Role instantiates a template; system Roles
have no organisation and are shared by every organisation that has not
overridden them. Assignments are always organisation-scoped.
"""
from datetime import datetime
from sqlalchemy import (
    String, ForeignKey, Table, Column, Boolean, Integer, Text, DateTime,
    CheckConstraint, UniqueConstraint, Index, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from taskboard.core.database.base import Base, TimestampMixin, generate_ulid
from taskboard.features.permissions.models import Permission


# ============================================================================
# Association Tables
# ============================================================================

# Template-Permission relationship
template_permissions = Table(
    "template_permissions",
    Base.metadata,
    Column("template_id", String(26), ForeignKey("role_templates.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="RESTRICT"), primary_key=True),
)

# Subject-Role relationship, scoped per organisation even for system roles
role_assignments = Table(
    "role_assignments",
    Base.metadata,
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("subject_id", String(64), primary_key=True),
    Column("subject_type", String(50), primary_key=True),
    Column("organisation_id", String(26), ForeignKey("organisations.id", ondelete="CASCADE"), primary_key=True),
    Column("assigned_at", DateTime(timezone=True), nullable=False, default=datetime.now),
    Index("ix_role_assignments_subject_org", "subject_id", "subject_type", "organisation_id"),
)


# ============================================================================
# Core Models
# ============================================================================

class RoleTemplate(Base, TimestampMixin):
    """
    Named, reusable bundle of permissions.

    Examples: admin (system, level 100), member (system, level 40),
    billing_reviewer (custom, owned by one organisation)
    """
    __tablename__ = "role_templates"
    __table_args__ = (
        CheckConstraint("NOT is_system OR organisation_id IS NULL", name="ck_role_templates_system_global"),
        # One custom/override template per name in an organisation
        UniqueConstraint("name", "organisation_id", name="uq_role_templates_name_org"),
        # One system template per name
        Index(
            "uq_role_templates_system_name",
            "name",
            unique=True,
            sqlite_where=text("is_system = 1"),
            postgresql_where=text("is_system"),
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Authority rank, higher = more privileged
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=10)

    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_be_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # null = system-scoped
    organisation_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("organisations.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )

    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=template_permissions,
        lazy="selectin",
        order_by="Permission.name",
    )

    @property
    def permission_names(self) -> set[str]:
        return {permission.name for permission in self.permissions}

    def __repr__(self) -> str:
        scope = "system" if self.is_system else self.organisation_id
        return f"<RoleTemplate(id={self.id}, name={self.name!r}, scope={scope})>"


class Role(Base, TimestampMixin):
    """
    Instantiation of a template that subjects can be assigned to.

    organisation_id is null for system roles. An override role belongs to one
    organisation and points at the system role it replaces there.
    """
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("template_id", "organisation_id", name="uq_roles_template_org"),
        # One override per system role per organisation
        UniqueConstraint("system_role_id", "organisation_id", name="uq_roles_system_role_org"),
        # One system role per template
        Index(
            "uq_roles_system_template",
            "template_id",
            unique=True,
            sqlite_where=text("organisation_id IS NULL"),
            postgresql_where=text("organisation_id IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    template_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("role_templates.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    organisation_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("organisations.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    overrides_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    system_role_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("roles.id", ondelete="SET NULL"),
        nullable=True,
    )

    template: Mapped["RoleTemplate"] = relationship("RoleTemplate", lazy="selectin")

    @property
    def name(self) -> str:
        return self.template.name

    @property
    def level(self) -> int:
        return self.template.level

    @property
    def is_system_role(self) -> bool:
        return self.organisation_id is None

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, template_id={self.template_id}, org_id={self.organisation_id}, overrides_system={self.overrides_system})>"
