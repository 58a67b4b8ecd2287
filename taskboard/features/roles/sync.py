"""
Declarative sync of the permission catalogue and the system templates.

Both functions are idempotent upserts run at bootstrap. Nothing is ever
deleted: a template dropped from the definitions stays in the store because
organisations may still hold roles on it.
"""
from typing import Any, Iterable, Mapping, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.core.cache import PermissionCache
from taskboard.core.database.engine import atomic
from taskboard.features.permissions.models import Permission
from taskboard.features.permissions.registry import PermissionRegistry
from taskboard.features.roles.models import RoleTemplate
from taskboard.features.roles.schemas import TemplateDefinition
from taskboard.features.roles.service import RoleService
from taskboard.utils import get_logger


log = get_logger(__name__)

ALL_PERMISSIONS = "all"


async def sync_permissions(db: AsyncSession, names: Iterable[str]) -> list[Permission]:
    """Register every name in the catalogue."""
    permissions = await PermissionRegistry(db).register_many(names)
    log.info(f"Synced {len(permissions)} permission(s)")
    return permissions


async def sync_system_templates(
    db: AsyncSession,
    definitions: Mapping[str, Mapping[str, Any] | TemplateDefinition],
    cache: Optional[PermissionCache] = None,
) -> list[RoleTemplate]:
    """
    Upsert system templates from `name -> definition` and make sure each one
    has its global role.

    A definition whose permissions are "all" receives every permission
    registered at sync time, so run sync_permissions first.
    """
    roles = RoleService(db, cache)
    templates = []
    async with atomic(db):
        registered = [permission.name for permission in await roles.templates.registry.all()]
        for name, raw in definitions.items():
            definition = raw if isinstance(raw, TemplateDefinition) else TemplateDefinition.model_validate({"name": name, **raw})
            permission_names = registered if definition.permissions == ALL_PERMISSIONS else definition.permissions
            template = await roles.templates.create_system(
                definition.name,
                permission_names,
                display_name=definition.display_name,
                description=definition.description,
                level=definition.level,
                can_be_deleted=definition.can_be_deleted,
            )
            await roles.system_role_for(template)
            templates.append(template)
    log.info(f"Synced {len(templates)} system template(s)")
    return templates
