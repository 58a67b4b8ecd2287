"""
Permission registry.

The catalogue of grantable permission identifiers. Registration is an
idempotent upsert by name and there is no delete path, so templates never
reference a permission that disappeared.
"""
from typing import Iterable, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.core.database.engine import atomic
from taskboard.core.exceptions import UnknownPermission
from taskboard.features.permissions.models import Permission
from taskboard.features.permissions.schemas import (
    describe_permission,
    validate_permission_name,
    validate_permission_names,
)
from taskboard.utils import get_logger


log = get_logger(__name__)


class PermissionRegistry:
    """Source of truth for which permission names are valid."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, name: str) -> Optional[Permission]:
        result = await self.db.execute(select(Permission).where(Permission.name == name))
        return result.scalars().first()

    async def register(
        self,
        name: str,
        description: Optional[str] = None,
        display_name: Optional[str] = None,
        category: Optional[str] = None,
    ) -> Permission:
        """
        Create the permission if missing, otherwise update its metadata.

        Missing metadata is derived from the name ("task.assign" ->
        display name "Assign Task", category "Task").
        """
        name = validate_permission_name(name)
        derived_display, derived_description, derived_category = describe_permission(name)
        async with atomic(self.db):
            permission = await self.get(name)
            if permission is None:
                permission = Permission(name=name)
                self.db.add(permission)
                log.info(f"Registered permission: {name}")
            permission.display_name = display_name or permission.display_name or derived_display
            permission.description = description or permission.description or derived_description
            permission.category = category or permission.category or derived_category
            await self.db.flush()
        return permission

    async def register_many(self, names: Iterable[str]) -> list[Permission]:
        """Register several permissions in one unit of work."""
        async with atomic(self.db):
            return [await self.register(name) for name in validate_permission_names(names)]

    async def all(self) -> list[Permission]:
        result = await self.db.execute(select(Permission).order_by(Permission.name))
        return list(result.scalars().all())

    async def exists(self, name: str) -> bool:
        result = await self.db.execute(select(Permission.id).where(Permission.name == name))
        return result.first() is not None

    async def resolve(self, names: Iterable[str]) -> list[Permission]:
        """
        Look up permissions by name.

        Raises:
            UnknownPermission: if any name is not registered
        """
        wanted = validate_permission_names(names)
        if not wanted:
            return []
        result = await self.db.execute(select(Permission).where(Permission.name.in_(wanted)))
        found = {permission.name: permission for permission in result.scalars().all()}
        missing = [name for name in wanted if name not in found]
        if missing:
            raise UnknownPermission(missing)
        return [found[name] for name in wanted]
