"""Definition sync and seed catalogue tests."""
import pytest
from pydantic import ValidationError
from sqlalchemy import func, select

from scripts.seed_permissions import DEFAULT_ROLES, default_permission_names
from taskboard.features.permissions.registry import PermissionRegistry
from taskboard.features.roles.models import Role
from taskboard.features.roles.service import RoleService
from taskboard.features.roles.sync import sync_permissions, sync_system_templates
from taskboard.features.roles.templates import TemplateStore


async def test_sync_is_idempotent(db) -> None:
    names = default_permission_names()
    await sync_permissions(db, names)
    first = await sync_system_templates(db, DEFAULT_ROLES)

    await sync_permissions(db, names)
    second = await sync_system_templates(db, DEFAULT_ROLES)

    assert [template.id for template in first] == [template.id for template in second]
    assert len(await PermissionRegistry(db).all()) == len(set(names))
    result = await db.execute(select(func.count()).select_from(Role).where(Role.organisation_id.is_(None)))
    assert result.scalar_one() == len(DEFAULT_ROLES)


async def test_all_means_every_registered_permission(db) -> None:
    await sync_permissions(db, default_permission_names())
    templates = {template.name: template for template in await sync_system_templates(db, DEFAULT_ROLES)}

    registered = {permission.name for permission in await PermissionRegistry(db).all()}
    assert templates["super_admin"].permission_names == registered
    assert templates["admin"].permission_names == registered
    assert templates["super_admin"].level == 1000
    assert templates["guest"].can_be_deleted is True
    assert templates["member"].is_system is True


async def test_sync_never_deletes_templates(db) -> None:
    await sync_permissions(db, ["task.view"])
    await sync_system_templates(db, {"viewer": {"permissions": ["task.view"]}, "guest": {"permissions": ["task.view"]}})

    await sync_system_templates(db, {"guest": {"permissions": ["task.view"], "level": 5}})

    store = TemplateStore(db)
    assert await store.get_system("viewer") is not None
    assert (await store.get_system("guest")).level == 5
    assert (await RoleService(db).active_role("viewer", "01HZZZZZZZZZZZZZZZZZZZZZZZ")) is not None


async def test_invalid_definition(db) -> None:
    with pytest.raises(ValidationError):
        await sync_system_templates(db, {"broken": {"permissions": "some"}})


def test_default_catalogue() -> None:
    names = default_permission_names()

    assert "task.viewAny" in names
    assert "task.changeStatus" in names
    assert "organisation.exportData" in names
    assert "manage-priorities" in names
    assert len(names) == len(set(names)) == 138
