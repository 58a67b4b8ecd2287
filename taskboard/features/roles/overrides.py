"""
System template override protocol.

Per (system template, organisation) pair an organisation is either
Unoverridden (its subjects hold the global system role) or Overridden (it owns
a template with the same name plus a role pointing at the system role, and
the subjects were migrated onto that role). create_override and
revert_to_system move between the two states; each transition, including the
assignment migration, is a single unit of work.
"""
from typing import Any, Iterable, Optional
from sqlalchemy import select, delete, insert, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.core.cache import NullPermissionCache, PermissionCache
from taskboard.core.database.engine import atomic
from taskboard.core.exceptions import (
    CannotRemoveAllPermissions,
    NotAnOverride,
    NotASystemTemplate,
    OverrideAlreadyExists,
    RoleNotFound,
    TemplateOwnershipMismatch,
)
from taskboard.core.subjects import Subject
from taskboard.features.audit.service import record_audit
from taskboard.features.roles.models import Role, RoleTemplate, role_assignments
from taskboard.features.roles.schemas import OverrideFields, OverrideResult, RevertResult
from taskboard.features.roles.service import RoleService
from taskboard.utils import get_logger


log = get_logger(__name__)


class OverrideProtocol:
    def __init__(self, db: AsyncSession, cache: Optional[PermissionCache] = None):
        self.db = db
        self.cache = cache if cache is not None else NullPermissionCache()
        self.roles = RoleService(db, self.cache)
        self.templates = self.roles.templates
        self.registry = self.templates.registry

    # ------------------------------------------------------------------
    # Override / revert
    # ------------------------------------------------------------------

    async def create_override(
        self,
        system_template_id: str,
        organisation_id: str,
        fields: OverrideFields | dict[str, Any] | None = None,
        permission_names: Optional[Iterable[str]] = None,
        actor_id: Optional[str] = None,
    ) -> OverrideResult:
        """
        Give the organisation its own copy of a system template and move the
        organisation's holders of the system role onto it.

        Args:
            system_template_id: Template to override (must be a system template)
            organisation_id: Organisation creating the override
            fields: display_name / description / level for the copy
            permission_names: Permissions of the copy; None copies the system set

        Raises:
            TemplateNotFound, NotASystemTemplate, OverrideAlreadyExists,
            UnknownPermission, CannotRemoveAllPermissions
        """
        if not isinstance(fields, OverrideFields):
            fields = OverrideFields.model_validate(fields or {})

        async with atomic(self.db):
            system_template = await self.templates.get(system_template_id)
            if not system_template.is_system:
                raise NotASystemTemplate(system_template_id)

            system_role = await self.roles.system_role_for(system_template)
            await self._ensure_no_override(system_template, system_role, organisation_id)

            if permission_names is None:
                permissions = list(system_template.permissions)
            else:
                permissions = await self.registry.resolve(permission_names)
            if not permissions:
                raise CannotRemoveAllPermissions(system_template.name)

            # Roles of this organisation whose holders move to the override:
            # the global system role plus a legacy organisation-owned copy
            sources = [system_role] + await self._legacy_roles(system_template, organisation_id)

            # A failed flush leaves the session unusable until rollback
            template_name = system_template.name
            try:
                template = await self.templates._insert(
                    name=template_name,
                    display_name=fields.display_name or system_template.display_name,
                    description=fields.description if fields.description is not None else system_template.description,
                    level=fields.level if fields.level is not None else system_template.level,
                    organisation_id=organisation_id,
                    is_system=False,
                    can_be_deleted=True,
                    permissions=permissions,
                )
                role = Role(
                    template=template,
                    organisation_id=organisation_id,
                    overrides_system=True,
                    system_role_id=system_role.id,
                )
                self.db.add(role)
                await self.db.flush()
            except IntegrityError as e:
                log.warning(f"Concurrent override of {template_name!r} in {organisation_id}: {e.orig}")
                raise OverrideAlreadyExists(template_name, organisation_id) from e

            migrated = await self._migrate(sources, role, organisation_id)

            for legacy in sources[1:]:
                await self.db.delete(legacy)
            await self.db.flush()

            await record_audit(
                self.db,
                action="create_override",
                resource_type="role",
                resource_id=role.id,
                organisation_id=organisation_id,
                details={
                    "template": system_template.name,
                    "system_role_id": system_role.id,
                    "permissions": sorted(template.permission_names),
                    "migrated": migrated,
                },
                actor_id=actor_id,
            )

        await self.cache.invalidate_organisation(organisation_id)
        log.info(
            f"Organisation {organisation_id} overrides {system_template.name!r} with role {role.id}, "
            f"migrated {migrated} assignment(s)"
        )
        return OverrideResult(role=role, migrated_user_count=migrated)

    async def revert_to_system(
        self,
        role_id: str,
        organisation_id: str,
        actor_id: Optional[str] = None,
    ) -> RevertResult:
        """
        Move the override role's holders back to the system role.

        The emptied override role then goes through the normal deletion path,
        and its template is deleted when no other role uses it. The audit log
        keeps the record of the override.

        Raises:
            RoleNotFound, NotAnOverride, TemplateOwnershipMismatch
        """
        async with atomic(self.db):
            role = await self.db.get(Role, role_id)
            if role is None:
                raise RoleNotFound(role_id)
            if not role.overrides_system or role.system_role_id is None:
                raise NotAnOverride(role_id)
            template = role.template
            if template.is_system or template.organisation_id != organisation_id or role.organisation_id != organisation_id:
                raise TemplateOwnershipMismatch(template.id, organisation_id)

            system_role = await self.db.get(Role, role.system_role_id)
            if system_role is None:
                raise RoleNotFound(role.system_role_id)

            migrated = await self._migrate([role], system_role, organisation_id)

            await self.db.delete(role)
            await self.db.flush()
            template_deleted = False
            if await self.templates.role_count(template) == 0:
                await self.templates.delete(template)
                template_deleted = True

            await record_audit(
                self.db,
                action="revert_to_system",
                resource_type="role",
                resource_id=role_id,
                organisation_id=organisation_id,
                details={
                    "template": template.name,
                    "system_role_id": system_role.id,
                    "migrated": migrated,
                    "template_deleted": template_deleted,
                },
                actor_id=actor_id,
            )

        await self.cache.invalidate_organisation(organisation_id)
        log.info(
            f"Organisation {organisation_id} reverted {template.name!r} to system role {system_role.id}, "
            f"migrated {migrated} assignment(s)"
        )
        return RevertResult(
            migrated_user_count=migrated,
            system_role_id=system_role.id,
            template_deleted=template_deleted,
        )

    # ------------------------------------------------------------------
    # Permission changes
    # ------------------------------------------------------------------

    async def add_permissions(
        self,
        role_id: str,
        organisation_id: str,
        names: Iterable[str],
        actor_id: Optional[str] = None,
    ) -> Role:
        """
        Add permissions to the role as seen by the organisation.

        A system role is overridden first (current set plus the new names) and
        the override role is returned.
        """
        names = list(names)
        role = await self._target_role(role_id, organisation_id)
        template = role.template
        if template.is_system:
            result = await self.create_override(
                template.id,
                organisation_id,
                permission_names=sorted(template.permission_names | set(names)),
                actor_id=actor_id,
            )
            return result.role

        self._check_ownership(template, organisation_id)
        async with atomic(self.db):
            await self.templates.add_permissions(template, names)
            await record_audit(
                self.db,
                action="add_permissions",
                resource_type="role",
                resource_id=role.id,
                organisation_id=organisation_id,
                details={"permissions": sorted(names)},
                actor_id=actor_id,
            )
        await self.cache.invalidate_organisation(organisation_id)
        return role

    async def remove_permissions(
        self,
        role_id: str,
        organisation_id: str,
        names: Iterable[str],
        actor_id: Optional[str] = None,
    ) -> Role:
        """
        Remove permissions from the role as seen by the organisation.

        Raises:
            CannotRemoveAllPermissions: nothing would remain
        """
        names = list(names)
        role = await self._target_role(role_id, organisation_id)
        template = role.template
        remaining = template.permission_names - set(names)
        if not remaining:
            raise CannotRemoveAllPermissions(template.name)
        if template.is_system:
            result = await self.create_override(
                template.id,
                organisation_id,
                permission_names=sorted(remaining),
                actor_id=actor_id,
            )
            return result.role

        self._check_ownership(template, organisation_id)
        async with atomic(self.db):
            await self.templates.remove_permissions(template, names)
            await record_audit(
                self.db,
                action="remove_permissions",
                resource_type="role",
                resource_id=role.id,
                organisation_id=organisation_id,
                details={"permissions": sorted(names)},
                actor_id=actor_id,
            )
        await self.cache.invalidate_organisation(organisation_id)
        return role

    async def update_role(
        self,
        role_id: str,
        organisation_id: str,
        fields: OverrideFields | dict[str, Any] | None = None,
        permission_names: Optional[Iterable[str]] = None,
        actor_id: Optional[str] = None,
    ) -> Role:
        """
        Update a role's metadata and, optionally, replace its permission set.

        System roles are overridden with the changes applied; a call without
        any change leaves a system role untouched.
        """
        if not isinstance(fields, OverrideFields):
            fields = OverrideFields.model_validate(fields or {})
        changes = fields.model_dump(exclude_none=True)
        names = list(permission_names) if permission_names is not None else None

        role = await self._target_role(role_id, organisation_id)
        template = role.template
        if template.is_system:
            if not changes and names is None:
                return role
            result = await self.create_override(template.id, organisation_id, fields, names, actor_id=actor_id)
            return result.role

        self._check_ownership(template, organisation_id)
        async with atomic(self.db):
            if changes:
                await self.templates.update(template, **changes)
            if names is not None:
                await self.templates.set_permissions(template, names)
            await record_audit(
                self.db,
                action="update",
                resource_type="role",
                resource_id=role.id,
                organisation_id=organisation_id,
                details={**changes, **({"permissions": sorted(names)} if names is not None else {})},
                actor_id=actor_id,
            )
        await self.cache.invalidate_organisation(organisation_id)
        return role

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _target_role(self, role_id: str, organisation_id: str) -> Role:
        """
        The role a permission change applies to. A system role the
        organisation already overrides resolves to that override.
        """
        role = await self.roles.assignments.get_visible_role(role_id, organisation_id, include_overridden=True)
        if role.is_system_role:
            override = await self.roles.override_role_for(role, organisation_id)
            if override is not None:
                return override
        return role

    @staticmethod
    def _check_ownership(template: RoleTemplate, organisation_id: str) -> None:
        if template.organisation_id != organisation_id:
            raise TemplateOwnershipMismatch(template.id, organisation_id)

    async def _ensure_no_override(self, system_template: RoleTemplate, system_role: Role, organisation_id: str) -> None:
        if await self.templates.get_owned(system_template.name, organisation_id) is not None:
            raise OverrideAlreadyExists(system_template.name, organisation_id)
        if await self.roles.override_role_for(system_role, organisation_id) is not None:
            raise OverrideAlreadyExists(system_template.name, organisation_id)

    async def _legacy_roles(self, system_template: RoleTemplate, organisation_id: str) -> list[Role]:
        """Organisation-owned, non-override roles instantiating the system template."""
        stmt = select(Role).where(
            and_(
                Role.template_id == system_template.id,
                Role.organisation_id == organisation_id,
                Role.overrides_system.is_(False),
            )
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _migrate(self, sources: list[Role], target: Role, organisation_id: str) -> int:
        """
        Move every assignment of the source roles in the organisation onto the
        target role. Returns the number of subjects moved.
        """
        source_ids = [role.id for role in sources]
        result = await self.db.execute(
            select(role_assignments.c.subject_id, role_assignments.c.subject_type).where(
                and_(
                    role_assignments.c.role_id.in_(source_ids),
                    role_assignments.c.organisation_id == organisation_id,
                )
            )
        )
        subjects = set(result.all())
        if not subjects:
            return 0

        result = await self.db.execute(
            select(role_assignments.c.subject_id, role_assignments.c.subject_type).where(
                and_(
                    role_assignments.c.role_id == target.id,
                    role_assignments.c.organisation_id == organisation_id,
                )
            )
        )
        already_on_target = set(result.all())

        await self.db.execute(
            delete(role_assignments).where(
                and_(
                    role_assignments.c.role_id.in_(source_ids),
                    role_assignments.c.organisation_id == organisation_id,
                )
            )
        )
        to_insert = sorted(subjects - already_on_target)
        if to_insert:
            await self.db.execute(
                insert(role_assignments),
                [
                    {
                        "role_id": target.id,
                        "subject_id": subject_id,
                        "subject_type": subject_type,
                        "organisation_id": organisation_id,
                    }
                    for subject_id, subject_type in to_insert
                ],
            )
        for subject_id, subject_type in subjects:
            await self.cache.invalidate(Subject(id=subject_id, type=subject_type), organisation_id)
        return len(subjects)
