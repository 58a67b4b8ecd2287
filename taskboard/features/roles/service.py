"""
Role lifecycle: custom role creation, system role materialization, the roles
visible to an organisation, and guarded deletion.
"""
from typing import Iterable, Optional
from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.core import config
from taskboard.core.cache import NullPermissionCache, PermissionCache
from taskboard.core.database.engine import atomic
from taskboard.core.exceptions import RoleInUse, RoleNotFound, RoleProtected
from taskboard.features.audit.service import record_audit
from taskboard.features.roles.assignments import RoleAssignmentStore
from taskboard.features.roles.models import Role, RoleTemplate
from taskboard.features.roles.templates import TemplateStore
from taskboard.utils import get_logger


log = get_logger(__name__)


class RoleService:
    def __init__(self, db: AsyncSession, cache: Optional[PermissionCache] = None):
        self.db = db
        self.cache = cache if cache is not None else NullPermissionCache()
        self.templates = TemplateStore(db, self.cache)
        self.assignments = RoleAssignmentStore(db, self.cache)

    async def get_role(self, role_id: str) -> Role:
        role = await self.db.get(Role, role_id)
        if role is None:
            raise RoleNotFound(role_id)
        return role

    async def system_role_for(self, template: RoleTemplate) -> Role:
        """
        The global role of a system template, created on first use.
        """
        stmt = select(Role).where(and_(Role.template_id == template.id, Role.organisation_id.is_(None)))
        result = await self.db.execute(stmt)
        role = result.scalars().first()
        if role is not None:
            return role
        async with atomic(self.db):
            role = Role(template=template, organisation_id=None, overrides_system=False)
            self.db.add(role)
            await self.db.flush()
        log.info(f"Materialized system role {role.id} for template {template.name!r}")
        return role

    async def override_role_for(self, system_role: Role, organisation_id: str) -> Optional[Role]:
        """The organisation's override of a system role, if any."""
        stmt = select(Role).where(
            and_(
                Role.system_role_id == system_role.id,
                Role.organisation_id == organisation_id,
                Role.overrides_system.is_(True),
            )
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def available_roles(self, organisation_id: str) -> list[Role]:
        """
        Roles an organisation can assign: its own roles plus the system roles
        it has not overridden. Exactly one role per template name.
        """
        result = await self.db.execute(select(Role).where(Role.organisation_id == organisation_id))
        own_roles = list(result.scalars().all())
        overridden_ids = {role.system_role_id for role in own_roles if role.overrides_system}
        own_names = {role.name for role in own_roles}

        result = await self.db.execute(select(Role).where(Role.organisation_id.is_(None)))
        system_roles = [
            role for role in result.scalars().all()
            if role.id not in overridden_ids and role.name not in own_names
        ]
        return sorted(own_roles + system_roles, key=lambda role: (-role.level, role.name))

    async def active_role(self, name: str, organisation_id: str) -> Optional[Role]:
        """The role currently standing for a template name in the organisation."""
        for role in await self.available_roles(organisation_id):
            if role.name == name:
                return role
        return None

    async def create_custom_role(
        self,
        organisation_id: str,
        name: str,
        permission_names: Iterable[str],
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        level: int = config.DEFAULT_CUSTOM_ROLE_LEVEL,
        actor_id: Optional[str] = None,
    ) -> Role:
        """
        Create an organisation template and the role instantiating it.

        Raises:
            DuplicateName: the name is taken in the organisation or by a
                system template
            UnknownPermission: a permission name is not registered
        """
        async with atomic(self.db):
            template = await self.templates.create_custom(
                organisation_id,
                name,
                permission_names,
                display_name=display_name,
                description=description,
                level=level,
            )
            role = Role(template=template, organisation_id=organisation_id, overrides_system=False)
            self.db.add(role)
            await self.db.flush()
            await record_audit(
                self.db,
                action="create",
                resource_type="role",
                resource_id=role.id,
                organisation_id=organisation_id,
                details={"name": name, "permissions": sorted(template.permission_names)},
                actor_id=actor_id,
            )
        log.info(f"Created custom role {name!r} ({role.id}) in organisation {organisation_id}")
        return role

    async def delete_role(self, role_id: str, organisation_id: str, actor_id: Optional[str] = None) -> None:
        """
        Delete an organisation role and, when nothing else uses it, its template.

        Raises:
            RoleNotFound: unknown role or owned by another organisation
            RoleProtected: system roles and protected names (e.g. admin)
            RoleInUse: the role still has assignments
        """
        stmt = select(Role).where(
            and_(
                Role.id == role_id,
                or_(Role.organisation_id == organisation_id, Role.organisation_id.is_(None)),
            )
        )
        result = await self.db.execute(stmt)
        role = result.scalars().first()
        if role is None:
            raise RoleNotFound(role_id)
        if role.is_system_role or role.name in config.PROTECTED_ROLE_NAMES:
            raise RoleProtected(role.name)

        template = role.template
        async with atomic(self.db):
            count = await self.assignments.count_assignments(role)
            if count > 0:
                raise RoleInUse(count)
            await self.db.delete(role)
            await self.db.flush()
            template_deleted = False
            if not template.is_system and await self.templates.role_count(template) == 0:
                await self.templates.delete(template)
                template_deleted = True
            await record_audit(
                self.db,
                action="delete",
                resource_type="role",
                resource_id=role_id,
                organisation_id=organisation_id,
                details={"name": template.name, "template_deleted": template_deleted},
                actor_id=actor_id,
            )
        await self.cache.invalidate_organisation(organisation_id)
        log.info(f"Deleted role {role_id} ({template.name!r}) from organisation {organisation_id}")
