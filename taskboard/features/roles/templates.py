"""
Role template store.

CRUD and queries over role templates. System templates are only written by the
definition sync (create_system); organisations change them through the
override protocol instead of update().
"""
from typing import Any, Iterable, Optional
from sqlalchemy import select, func, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.core import config
from taskboard.core.cache import NullPermissionCache, PermissionCache
from taskboard.core.database.engine import atomic
from taskboard.core.exceptions import (
    CannotRemoveAllPermissions,
    DuplicateName,
    SystemTemplateProtected,
    TemplateInUse,
    TemplateNotFound,
)
from taskboard.features.permissions.registry import PermissionRegistry
from taskboard.features.roles.models import Role, RoleTemplate
from taskboard.utils import get_logger


log = get_logger(__name__)

UPDATABLE_FIELDS = frozenset({"display_name", "description", "level"})


class TemplateStore:
    def __init__(self, db: AsyncSession, cache: Optional[PermissionCache] = None):
        self.db = db
        self.cache = cache if cache is not None else NullPermissionCache()
        self.registry = PermissionRegistry(db)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, template_id: str) -> RoleTemplate:
        template = await self.db.get(RoleTemplate, template_id)
        if template is None:
            raise TemplateNotFound(template_id)
        return template

    async def get_system(self, name: str) -> Optional[RoleTemplate]:
        stmt = select(RoleTemplate).where(
            and_(RoleTemplate.name == name, RoleTemplate.is_system.is_(True))
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def get_owned(self, name: str, organisation_id: str) -> Optional[RoleTemplate]:
        """The organisation's own template with this name (custom or override)."""
        stmt = select(RoleTemplate).where(
            and_(RoleTemplate.name == name, RoleTemplate.organisation_id == organisation_id)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def find_by_name(self, name: str, organisation_id: Optional[str] = None) -> Optional[RoleTemplate]:
        """Organisation-owned template first, falling back to the system template."""
        if organisation_id:
            template = await self.get_owned(name, organisation_id)
            if template is not None:
                return template
        return await self.get_system(name)

    async def list_for_organisation(self, organisation_id: str) -> list[RoleTemplate]:
        """System templates plus the organisation's own templates."""
        stmt = (
            select(RoleTemplate)
            .where(
                or_(
                    RoleTemplate.organisation_id == organisation_id,
                    RoleTemplate.is_system.is_(True),
                )
            )
            .order_by(RoleTemplate.level.desc(), RoleTemplate.name)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def role_count(self, template: RoleTemplate) -> int:
        """Number of roles instantiating this template."""
        result = await self.db.execute(
            select(func.count()).select_from(Role).where(Role.template_id == template.id)
        )
        return result.scalar_one()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_custom(
        self,
        organisation_id: str,
        name: str,
        permission_names: Iterable[str],
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        level: int = config.DEFAULT_CUSTOM_ROLE_LEVEL,
    ) -> RoleTemplate:
        """
        Create an organisation-owned template.

        Raises:
            DuplicateName: the organisation already has a template with this
                name, or the name belongs to a system template (organisations
                customise system templates by overriding them)
            UnknownPermission: a permission name is not registered
        """
        async with atomic(self.db):
            if await self.get_owned(name, organisation_id) is not None:
                raise DuplicateName(name, organisation_id)
            if await self.get_system(name) is not None:
                raise DuplicateName(name, organisation_id)
            permissions = await self.registry.resolve(permission_names)
            template = await self._insert(
                name=name,
                display_name=display_name or name,
                description=description,
                level=level,
                organisation_id=organisation_id,
                permissions=permissions,
            )
        log.info(f"Created custom template {name!r} in organisation {organisation_id}")
        return template

    async def create_system(
        self,
        name: str,
        permission_names: Iterable[str],
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        level: int = 10,
        can_be_deleted: bool = False,
    ) -> RoleTemplate:
        """Upsert a system template keyed on name. Permissions are replaced."""
        async with atomic(self.db):
            permissions = await self.registry.resolve(permission_names)
            template = await self.get_system(name)
            if template is None:
                template = await self._insert(
                    name=name,
                    display_name=display_name or name,
                    description=description,
                    level=level,
                    organisation_id=None,
                    permissions=permissions,
                    is_system=True,
                    can_be_deleted=can_be_deleted,
                )
                log.info(f"Created system template {name!r}")
            else:
                template.display_name = display_name or template.display_name
                template.description = description if description is not None else template.description
                template.level = level
                template.can_be_deleted = can_be_deleted
                template.permissions = permissions
                await self.db.flush()
                log.info(f"Updated system template {name!r}")
        await self.cache.invalidate_all()
        return template

    async def _insert(self, permissions: list, **fields: Any) -> RoleTemplate:
        """Insert a template row; callers own validation and the unit of work."""
        template = RoleTemplate(**fields)
        template.permissions = list(permissions)
        self.db.add(template)
        await self.db.flush()
        return template

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    async def update(self, template: RoleTemplate, **fields: Any) -> RoleTemplate:
        """
        Update display_name, description or level of an organisation template.

        Raises:
            SystemTemplateProtected: for system templates
            ValueError: for fields that cannot be updated
        """
        self._check_mutable(template)
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update template fields: {', '.join(sorted(unknown))}")
        async with atomic(self.db):
            for key, value in fields.items():
                if value is not None:
                    setattr(template, key, value)
            await self.db.flush()
        await self._invalidate(template)
        return template

    async def add_permissions(self, template: RoleTemplate, names: Iterable[str]) -> RoleTemplate:
        """
        Raises:
            SystemTemplateProtected: for system templates
        """
        self._check_mutable(template)
        async with atomic(self.db):
            permissions = await self.registry.resolve(names)
            current = template.permission_names
            template.permissions = template.permissions + [p for p in permissions if p.name not in current]
            await self.db.flush()
        await self._invalidate(template)
        log.info(f"Added {len(permissions)} permission(s) to template {template.name!r}")
        return template

    async def remove_permissions(self, template: RoleTemplate, names: Iterable[str]) -> RoleTemplate:
        """
        Raises:
            SystemTemplateProtected: for system templates
            CannotRemoveAllPermissions: if the template would be left empty
                while at least one role uses it
        """
        self._check_mutable(template)
        removed = set(names)
        remaining = [p for p in template.permissions if p.name not in removed]
        return await self._replace_permissions(template, remaining)

    async def set_permissions(self, template: RoleTemplate, names: Iterable[str]) -> RoleTemplate:
        """Replace the template's permission set. System templates are refused."""
        self._check_mutable(template)
        permissions = await self.registry.resolve(names)
        return await self._replace_permissions(template, permissions)

    @staticmethod
    def _check_mutable(template: RoleTemplate) -> None:
        # System templates change only through the catalogue sync
        if template.is_system:
            raise SystemTemplateProtected(template.name)

    async def _replace_permissions(self, template: RoleTemplate, permissions: list) -> RoleTemplate:
        async with atomic(self.db):
            if not permissions and await self.role_count(template) > 0:
                raise CannotRemoveAllPermissions(template.name)
            template.permissions = list(permissions)
            await self.db.flush()
        await self._invalidate(template)
        return template

    async def delete(self, template: RoleTemplate) -> None:
        """
        Raises:
            SystemTemplateProtected: for system templates
            TemplateInUse: if any role still references the template
        """
        self._check_mutable(template)
        async with atomic(self.db):
            count = await self.role_count(template)
            if count > 0:
                raise TemplateInUse(count)
            await self.db.delete(template)
            await self.db.flush()
        log.info(f"Deleted template {template.name!r} of organisation {template.organisation_id}")

    async def _invalidate(self, template: RoleTemplate) -> None:
        if template.organisation_id is None:
            await self.cache.invalidate_all()
        else:
            await self.cache.invalidate_organisation(template.organisation_id)
