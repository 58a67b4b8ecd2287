"""
Role assignment store.

Assignments link a subject to a role inside one organisation. A system role
(organisation_id is null) can be assigned independently in every
organisation that has not overridden it.
"""
from datetime import datetime
from typing import Iterable, Optional
from sqlalchemy import select, delete, insert, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.core.cache import NullPermissionCache, PermissionCache
from taskboard.core.database.engine import atomic
from taskboard.core.exceptions import RoleNotFound
from taskboard.core.subjects import Subject
from taskboard.features.organisations.service import OrganisationService
from taskboard.features.roles.models import Role, RoleTemplate, role_assignments
from taskboard.utils import get_logger


log = get_logger(__name__)


def _assignment_of(subject: Subject, organisation_id: str):
    return and_(
        role_assignments.c.subject_id == subject.id,
        role_assignments.c.subject_type == subject.type,
        role_assignments.c.organisation_id == organisation_id,
    )


class RoleAssignmentStore:
    def __init__(self, db: AsyncSession, cache: Optional[PermissionCache] = None):
        self.db = db
        self.cache = cache if cache is not None else NullPermissionCache()
        self.organisations = OrganisationService(db, self.cache)

    async def get_visible_role(
        self,
        role_id: str,
        organisation_id: str,
        include_overridden: bool = False,
    ) -> Role:
        """
        A role usable in the organisation: its own roles and the system roles
        it has not overridden.

        include_overridden also admits a system role the organisation has
        replaced with an override.

        Raises:
            RoleNotFound: unknown id, a role owned by another organisation, or
                an overridden system role
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
        if role.organisation_id is None and not include_overridden:
            overridden = await self.db.execute(
                select(Role.id).where(
                    and_(
                        Role.system_role_id == role.id,
                        Role.organisation_id == organisation_id,
                        Role.overrides_system.is_(True),
                    )
                )
            )
            if overridden.first() is not None:
                raise RoleNotFound(role_id)
        return role

    async def assign(self, role: Role, subject: Subject, organisation_id: str) -> bool:
        """
        Assign a role; returns False if the subject already held it.

        Raises:
            RoleNotFound: the role is not visible to the organisation
            SubjectNotInOrganisation: the subject is not a member
        """
        async with atomic(self.db):
            await self.get_visible_role(role.id, organisation_id)
            await self.organisations.ensure_member(subject, organisation_id)
            if await self._holds(role.id, subject, organisation_id):
                return False
            await self._insert(role.id, subject, organisation_id)
        await self.cache.invalidate(subject, organisation_id)
        log.info(f"Assigned role {role.id} to {subject} in organisation {organisation_id}")
        return True

    async def revoke(self, role: Role, subject: Subject, organisation_id: str) -> bool:
        """Remove a role assignment; returns False if there was none."""
        async with atomic(self.db):
            result = await self.db.execute(
                delete(role_assignments).where(
                    and_(role_assignments.c.role_id == role.id, _assignment_of(subject, organisation_id))
                )
            )
        await self.cache.invalidate(subject, organisation_id)
        revoked = result.rowcount > 0
        if revoked:
            log.info(f"Revoked role {role.id} from {subject} in organisation {organisation_id}")
        return revoked

    async def replace_assignments(
        self,
        subject: Subject,
        organisation_id: str,
        role_ids: Iterable[str],
    ) -> list[Role]:
        """
        Replace the subject's whole role set in the organisation.

        Every role is validated before anything is deleted; deletion and the
        inserts then run as one unit of work.

        Raises:
            RoleNotFound: any role id is not visible to the organisation
            SubjectNotInOrganisation: the subject is not a member
        """
        wanted = list(dict.fromkeys(role_ids))
        async with atomic(self.db):
            await self.organisations.ensure_member(subject, organisation_id)
            roles = [await self.get_visible_role(role_id, organisation_id) for role_id in wanted]
            await self.db.execute(delete(role_assignments).where(_assignment_of(subject, organisation_id)))
            for role in roles:
                await self._insert(role.id, subject, organisation_id)
        await self.cache.invalidate(subject, organisation_id)
        log.info(f"Replaced roles of {subject} in organisation {organisation_id} with {wanted}")
        return roles

    async def roles_for(self, subject: Subject, organisation_id: str) -> list[Role]:
        stmt = (
            select(Role)
            .join(role_assignments, role_assignments.c.role_id == Role.id)
            .join(RoleTemplate, RoleTemplate.id == Role.template_id)
            .where(_assignment_of(subject, organisation_id))
            .order_by(RoleTemplate.level.desc(), RoleTemplate.name)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def has_role(self, subject: Subject, role_name: str, organisation_id: str) -> bool:
        """Whether the subject holds a role whose template has this name."""
        stmt = (
            select(role_assignments.c.role_id)
            .join(Role, Role.id == role_assignments.c.role_id)
            .join(RoleTemplate, RoleTemplate.id == Role.template_id)
            .where(and_(_assignment_of(subject, organisation_id), RoleTemplate.name == role_name))
        )
        result = await self.db.execute(stmt)
        return result.first() is not None

    async def subjects_with_role(self, role: Role, organisation_id: str) -> set[Subject]:
        stmt = select(role_assignments.c.subject_id, role_assignments.c.subject_type).where(
            and_(
                role_assignments.c.role_id == role.id,
                role_assignments.c.organisation_id == organisation_id,
            )
        )
        result = await self.db.execute(stmt)
        return {Subject(id=subject_id, type=subject_type) for subject_id, subject_type in result.all()}

    async def count_assignments(self, role: Role, organisation_id: Optional[str] = None) -> int:
        """Assignments of the role, in one organisation or across all of them."""
        stmt = select(func.count()).select_from(role_assignments).where(role_assignments.c.role_id == role.id)
        if organisation_id is not None:
            stmt = stmt.where(role_assignments.c.organisation_id == organisation_id)
        result = await self.db.execute(stmt)
        return result.scalar_one()

    async def _holds(self, role_id: str, subject: Subject, organisation_id: str) -> bool:
        stmt = select(role_assignments.c.role_id).where(
            and_(role_assignments.c.role_id == role_id, _assignment_of(subject, organisation_id))
        )
        result = await self.db.execute(stmt)
        return result.first() is not None

    async def _insert(self, role_id: str, subject: Subject, organisation_id: str) -> None:
        await self.db.execute(
            insert(role_assignments).values(
                role_id=role_id,
                subject_id=subject.id,
                subject_type=subject.type,
                organisation_id=organisation_id,
                assigned_at=datetime.now(),
            )
        )
