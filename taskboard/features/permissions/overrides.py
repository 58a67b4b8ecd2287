"""
Direct per-subject permission grants and denials inside an organisation.

A denial wins over every grant and every role; a grant adds a permission no
role carries. Writing an override replaces the previous one for the same
(subject, permission, organisation).
"""
from typing import Optional
from sqlalchemy import select, delete, and_
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.core.cache import NullPermissionCache, PermissionCache
from taskboard.core.database.engine import atomic
from taskboard.core.exceptions import UnknownPermission
from taskboard.core.subjects import Subject
from taskboard.features.organisations.service import OrganisationService
from taskboard.features.permissions.models import Permission, PermissionOverride
from taskboard.features.permissions.registry import PermissionRegistry
from taskboard.features.permissions.schemas import OverrideEntry
from taskboard.utils import get_logger


log = get_logger(__name__)


def _override_of(subject: Subject, organisation_id: str):
    return and_(
        PermissionOverride.subject_id == subject.id,
        PermissionOverride.subject_type == subject.type,
        PermissionOverride.organisation_id == organisation_id,
    )


class PermissionOverrideStore:
    def __init__(self, db: AsyncSession, cache: Optional[PermissionCache] = None):
        self.db = db
        self.cache = cache if cache is not None else NullPermissionCache()
        self.registry = PermissionRegistry(db)
        self.organisations = OrganisationService(db, self.cache)

    async def set_override(
        self,
        subject: Subject,
        permission_name: str,
        organisation_id: str,
        grant: bool,
    ) -> PermissionOverride:
        """
        Grant (grant=True) or deny (grant=False) one permission directly.

        Raises:
            SubjectNotInOrganisation: the subject is not a member
            UnknownPermission: the permission is not registered
        """
        async with atomic(self.db):
            await self.organisations.ensure_member(subject, organisation_id)
            permission = await self.registry.get(permission_name)
            if permission is None:
                raise UnknownPermission([permission_name])
            await self.db.execute(
                delete(PermissionOverride).where(
                    and_(_override_of(subject, organisation_id), PermissionOverride.permission_id == permission.id)
                )
            )
            override = PermissionOverride(
                subject_id=subject.id,
                subject_type=subject.type,
                permission=permission,
                organisation_id=organisation_id,
                grant=grant,
            )
            self.db.add(override)
            await self.db.flush()
        await self.cache.invalidate(subject, organisation_id)
        log.info(
            f"{'Granted' if grant else 'Denied'} {permission_name} "
            f"{'to' if grant else 'for'} {subject} in organisation {organisation_id}"
        )
        return override

    async def grant(self, subject: Subject, permission_name: str, organisation_id: str) -> PermissionOverride:
        return await self.set_override(subject, permission_name, organisation_id, grant=True)

    async def deny(self, subject: Subject, permission_name: str, organisation_id: str) -> PermissionOverride:
        return await self.set_override(subject, permission_name, organisation_id, grant=False)

    async def clear_override(self, subject: Subject, permission_name: str, organisation_id: str) -> bool:
        """Remove a grant or denial; returns False if there was none."""
        async with atomic(self.db):
            permission_ids = select(Permission.id).where(Permission.name == permission_name)
            result = await self.db.execute(
                delete(PermissionOverride).where(
                    and_(
                        _override_of(subject, organisation_id),
                        PermissionOverride.permission_id.in_(permission_ids),
                    )
                )
            )
        await self.cache.invalidate(subject, organisation_id)
        return result.rowcount > 0

    async def list_overrides(self, subject: Subject, organisation_id: str) -> list[OverrideEntry]:
        stmt = (
            select(Permission.name, PermissionOverride.grant)
            .join(Permission, Permission.id == PermissionOverride.permission_id)
            .where(_override_of(subject, organisation_id))
            .order_by(Permission.name)
        )
        result = await self.db.execute(stmt)
        return [OverrideEntry(permission=name, grant=grant) for name, grant in result.all()]
