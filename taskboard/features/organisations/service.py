"""
Organisation and membership operations.
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import select, delete, and_, insert
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.core.cache import NullPermissionCache, PermissionCache
from taskboard.core.database.engine import atomic
from taskboard.core.exceptions import SubjectNotInOrganisation
from taskboard.core.subjects import Subject
from taskboard.features.organisations.models import Organisation, organisation_members
from taskboard.features.permissions.models import PermissionOverride
from taskboard.features.roles.models import role_assignments
from taskboard.utils import get_logger


log = get_logger(__name__)


class OrganisationService:
    """Tenant creation and subject membership."""

    def __init__(self, db: AsyncSession, cache: Optional[PermissionCache] = None):
        self.db = db
        self.cache = cache if cache is not None else NullPermissionCache()

    async def create_organisation(self, name: str) -> Organisation:
        async with atomic(self.db):
            organisation = Organisation(name=name)
            self.db.add(organisation)
            await self.db.flush()
        log.info(f"Created organisation {organisation.id} ({name!r})")
        return organisation

    async def get(self, organisation_id: str) -> Organisation | None:
        return await self.db.get(Organisation, organisation_id)

    async def is_member(self, subject: Subject, organisation_id: str) -> bool:
        stmt = select(organisation_members.c.subject_id).where(
            and_(
                organisation_members.c.organisation_id == organisation_id,
                organisation_members.c.subject_id == subject.id,
                organisation_members.c.subject_type == subject.type,
            )
        )
        result = await self.db.execute(stmt)
        return result.first() is not None

    async def ensure_member(self, subject: Subject, organisation_id: str) -> None:
        """Raise SubjectNotInOrganisation unless the subject is a member."""
        if not await self.is_member(subject, organisation_id):
            raise SubjectNotInOrganisation(subject.id, organisation_id)

    async def add_member(self, subject: Subject, organisation_id: str) -> bool:
        """Add a subject to an organisation. Returns False if already a member."""
        async with atomic(self.db):
            if await self.is_member(subject, organisation_id):
                return False
            await self.db.execute(
                insert(organisation_members).values(
                    organisation_id=organisation_id,
                    subject_id=subject.id,
                    subject_type=subject.type,
                    joined_at=datetime.now(),
                )
            )
        log.info(f"Added {subject} to organisation {organisation_id}")
        return True

    async def remove_member(self, subject: Subject, organisation_id: str) -> bool:
        """
        Remove a subject from an organisation together with its role
        assignments and permission overrides there.
        """
        async with atomic(self.db):
            await self.db.execute(
                delete(role_assignments).where(
                    and_(
                        role_assignments.c.subject_id == subject.id,
                        role_assignments.c.subject_type == subject.type,
                        role_assignments.c.organisation_id == organisation_id,
                    )
                )
            )
            await self.db.execute(
                delete(PermissionOverride).where(
                    and_(
                        PermissionOverride.subject_id == subject.id,
                        PermissionOverride.subject_type == subject.type,
                        PermissionOverride.organisation_id == organisation_id,
                    )
                )
            )
            result = await self.db.execute(
                delete(organisation_members).where(
                    and_(
                        organisation_members.c.organisation_id == organisation_id,
                        organisation_members.c.subject_id == subject.id,
                        organisation_members.c.subject_type == subject.type,
                    )
                )
            )
        await self.cache.invalidate(subject, organisation_id)
        removed = result.rowcount > 0
        if removed:
            log.info(f"Removed {subject} from organisation {organisation_id}")
        return removed
