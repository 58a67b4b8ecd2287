"""
Permission resolution.

effective = (permissions of every held role  ∪  direct grants)  ∖  direct denials

Role-derived sets are cached per (subject, organisation) through the cache
collaborator; direct overrides are always read from the store.
"""
from typing import Iterable, Optional
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.core import config
from taskboard.core.cache import NullPermissionCache, PermissionCache
from taskboard.core.subjects import Subject
from taskboard.features.permissions.models import Permission, PermissionOverride
from taskboard.features.roles.assignments import RoleAssignmentStore
from taskboard.features.roles.models import Role, role_assignments, template_permissions
from taskboard.utils import get_logger


log = get_logger(__name__)


class PermissionResolver:
    def __init__(self, db: AsyncSession, cache: Optional[PermissionCache] = None):
        self.db = db
        self.cache = cache if cache is not None else NullPermissionCache()
        self.assignments = RoleAssignmentStore(db, self.cache)

    async def role_permissions(self, subject: Subject, organisation_id: str) -> frozenset[str]:
        """Union of the permissions of every role the subject holds."""
        cached = await self.cache.get(subject, organisation_id)
        if cached is not None:
            return cached

        stmt = (
            select(Permission.name)
            .distinct()
            .join(template_permissions, template_permissions.c.permission_id == Permission.id)
            .join(Role, Role.template_id == template_permissions.c.template_id)
            .join(role_assignments, role_assignments.c.role_id == Role.id)
            .where(
                and_(
                    role_assignments.c.subject_id == subject.id,
                    role_assignments.c.subject_type == subject.type,
                    role_assignments.c.organisation_id == organisation_id,
                )
            )
        )
        result = await self.db.execute(stmt)
        permissions = frozenset(result.scalars().all())
        await self.cache.set(subject, organisation_id, permissions)
        return permissions

    async def _overrides(self, subject: Subject, organisation_id: str) -> tuple[set[str], set[str]]:
        """(granted, denied) permission names held directly by the subject."""
        stmt = (
            select(Permission.name, PermissionOverride.grant)
            .join(Permission, Permission.id == PermissionOverride.permission_id)
            .where(
                and_(
                    PermissionOverride.subject_id == subject.id,
                    PermissionOverride.subject_type == subject.type,
                    PermissionOverride.organisation_id == organisation_id,
                )
            )
        )
        result = await self.db.execute(stmt)
        granted, denied = set(), set()
        for name, grant in result.all():
            (granted if grant else denied).add(name)
        return granted, denied

    async def effective_permissions(self, subject: Subject, organisation_id: str) -> frozenset[str]:
        granted, denied = await self._overrides(subject, organisation_id)
        roles = await self.role_permissions(subject, organisation_id)
        return frozenset((roles | granted) - denied)

    async def has_permission(self, subject: Subject, permission_name: str, organisation_id: str) -> bool:
        """
        Check one permission.

        Direct denial is checked first, then direct grant, and only then the
        role scan.
        """
        stmt = (
            select(PermissionOverride.grant)
            .join(Permission, Permission.id == PermissionOverride.permission_id)
            .where(
                and_(
                    Permission.name == permission_name,
                    PermissionOverride.subject_id == subject.id,
                    PermissionOverride.subject_type == subject.type,
                    PermissionOverride.organisation_id == organisation_id,
                )
            )
        )
        result = await self.db.execute(stmt)
        grant = result.scalars().first()
        if grant is not None:
            log.debug(f"{subject} {'granted' if grant else 'denied'} {permission_name} directly in {organisation_id}")
            return grant
        allowed = permission_name in await self.role_permissions(subject, organisation_id)
        log.debug(f"{subject} {'has' if allowed else 'lacks'} {permission_name} through roles in {organisation_id}")
        return allowed

    async def has_any_permission(self, subject: Subject, permission_names: Iterable[str], organisation_id: str) -> bool:
        effective = await self.effective_permissions(subject, organisation_id)
        return any(name in effective for name in permission_names)

    async def has_all_permissions(self, subject: Subject, permission_names: Iterable[str], organisation_id: str) -> bool:
        effective = await self.effective_permissions(subject, organisation_id)
        return all(name in effective for name in permission_names)

    # ------------------------------------------------------------------
    # Role levels
    # ------------------------------------------------------------------

    async def highest_role(self, subject: Subject, organisation_id: str) -> Optional[Role]:
        roles = await self.assignments.roles_for(subject, organisation_id)
        return roles[0] if roles else None

    async def highest_level(self, subject: Subject, organisation_id: str) -> Optional[int]:
        """Highest template level among the subject's roles; None without roles."""
        role = await self.highest_role(subject, organisation_id)
        return role.level if role is not None else None

    async def has_role_level(self, subject: Subject, required_level: int, organisation_id: str) -> bool:
        level = await self.highest_level(subject, organisation_id)
        return level is not None and level >= required_level

    async def can_manage(self, actor: Subject, target: Subject, organisation_id: str) -> bool:
        """
        Whether the actor outranks the target in the organisation.

        Nobody manages themselves. A target without roles can be managed from
        MANAGE_UNASSIGNED_MIN_LEVEL upwards.
        """
        if actor == target:
            return False
        actor_level = await self.highest_level(actor, organisation_id)
        if actor_level is None:
            return False
        target_level = await self.highest_level(target, organisation_id)
        if target_level is None:
            return actor_level >= config.MANAGE_UNASSIGNED_MIN_LEVEL
        return actor_level > target_level
