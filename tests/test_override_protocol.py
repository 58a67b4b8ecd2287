"""Override protocol tests: create_override, revert_to_system and implicit overrides."""
import pytest
from sqlalchemy import select

from taskboard.core.exceptions import (
    CannotRemoveAllPermissions,
    NotAnOverride,
    NotASystemTemplate,
    OverrideAlreadyExists,
    RoleNotFound,
    TemplateNotFound,
    TemplateOwnershipMismatch,
    UnknownPermission,
)
from taskboard.core.subjects import Subject
from taskboard.features.audit.service import list_audit_logs
from taskboard.features.organisations.service import OrganisationService
from taskboard.features.permissions.resolution import PermissionResolver
from taskboard.features.roles.assignments import RoleAssignmentStore
from taskboard.features.roles.models import Role, RoleTemplate, role_assignments
from taskboard.features.roles.overrides import OverrideProtocol
from taskboard.features.roles.service import RoleService
from taskboard.features.roles.sync import sync_permissions, sync_system_templates


pytestmark = pytest.mark.asyncio


async def _assignment_rows(db, organisation_id):
    result = await db.execute(
        select(role_assignments.c.role_id, role_assignments.c.subject_id).where(
            role_assignments.c.organisation_id == organisation_id
        )
    )
    return set(result.all())


# ============================================================================
# Override and revert round trip
# ============================================================================

async def test_override_and_revert_admin(db, cache) -> None:
    await sync_permissions(db, ["project.create", "project.delete"])
    [admin] = await sync_system_templates(
        db, {"admin": {"level": 100, "permissions": ["project.create", "project.delete"]}}, cache
    )
    organisations = OrganisationService(db, cache)
    o1 = (await organisations.create_organisation("O1")).id
    u1, u2 = Subject.user("U1"), Subject.user("U2")
    for subject in (u1, u2):
        await organisations.add_member(subject, o1)

    roles = RoleService(db, cache)
    assignments = RoleAssignmentStore(db, cache)
    resolver = PermissionResolver(db, cache)
    r0 = await roles.system_role_for(admin)
    await assignments.assign(r0, u1, o1)
    await assignments.assign(r0, u2, o1)
    assert await resolver.has_permission(u1, "project.delete", o1)

    result = await OverrideProtocol(db, cache).create_override(admin.id, o1, {}, ["project.create"])
    r1 = result.role

    assert result.migrated_user_count == 2
    assert r1.overrides_system is True
    assert r1.system_role_id == r0.id
    assert r1.template.name == "admin"
    assert r1.template.organisation_id == o1
    assert r1.template.is_system is False
    assert r1.template.permission_names == {"project.create"}
    assert [role.id for role in await assignments.roles_for(u1, o1)] == [r1.id]
    assert [role.id for role in await assignments.roles_for(u2, o1)] == [r1.id]
    assert await assignments.count_assignments(r0, o1) == 0
    assert not await resolver.has_permission(u1, "project.delete", o1)

    reverted = await OverrideProtocol(db, cache).revert_to_system(r1.id, o1)

    assert reverted.migrated_user_count == 2
    assert reverted.system_role_id == r0.id
    assert [role.id for role in await assignments.roles_for(u1, o1)] == [r0.id]
    assert [role.id for role in await assignments.roles_for(u2, o1)] == [r0.id]
    assert await resolver.has_permission(u1, "project.delete", o1)


# ============================================================================
# create_override
# ============================================================================

async def test_override_copies_system_permissions_and_metadata(db, catalogue, organisation_id) -> None:
    result = await OverrideProtocol(db).create_override(catalogue["member"].id, organisation_id)

    template = result.role.template
    assert result.migrated_user_count == 0
    assert template.permission_names == catalogue["member"].permission_names
    assert template.display_name == "Member"
    assert template.level == 40
    assert template.can_be_deleted is True


async def test_override_fields_are_applied(db, catalogue, organisation_id) -> None:
    result = await OverrideProtocol(db).create_override(
        catalogue["member"].id,
        organisation_id,
        {"display_name": "Contributor", "level": 45},
    )

    assert result.role.template.display_name == "Contributor"
    assert result.role.template.level == 45
    assert result.role.template.description == "Regular organisation member"


async def test_override_requires_system_template(db, catalogue, organisation_id) -> None:
    role = await RoleService(db).create_custom_role(organisation_id, "reviewer", ["task.view"])

    with pytest.raises(NotASystemTemplate):
        await OverrideProtocol(db).create_override(role.template_id, organisation_id)
    with pytest.raises(TemplateNotFound):
        await OverrideProtocol(db).create_override("01HZZZZZZZZZZZZZZZZZZZZZZZ", organisation_id)


async def test_second_override_is_rejected(db, catalogue, organisation_id) -> None:
    protocol = OverrideProtocol(db)
    member_id = catalogue["member"].id
    await protocol.create_override(member_id, organisation_id)

    with pytest.raises(OverrideAlreadyExists):
        await protocol.create_override(member_id, organisation_id)

    result = await db.execute(
        select(RoleTemplate).where(RoleTemplate.name == "member", RoleTemplate.organisation_id == organisation_id)
    )
    assert len(result.scalars().all()) == 1


async def test_concurrent_override_loses_to_unique_constraint(db, catalogue, organisation_id, monkeypatch) -> None:
    protocol = OverrideProtocol(db)
    member_id = catalogue["member"].id
    await protocol.create_override(member_id, organisation_id)

    async def no_precheck(*args, **kwargs):
        return None

    # A racing caller passes the pre-check before the first override commits
    monkeypatch.setattr(protocol, "_ensure_no_override", no_precheck)
    with pytest.raises(OverrideAlreadyExists):
        await protocol.create_override(member_id, organisation_id)

    result = await db.execute(
        select(Role).where(Role.organisation_id == organisation_id, Role.overrides_system.is_(True))
    )
    assert len(result.scalars().all()) == 1


async def test_overrides_are_independent_per_organisation(db, catalogue, organisation_id, other_organisation_id) -> None:
    protocol = OverrideProtocol(db)
    member_id = catalogue["member"].id

    first = await protocol.create_override(member_id, organisation_id)
    second = await protocol.create_override(member_id, other_organisation_id)

    assert first.role.id != second.role.id
    assert first.role.system_role_id == second.role.system_role_id


async def test_override_migration_is_exact(db, catalogue, organisation_id, other_organisation_id, alice, bob, carol) -> None:
    roles = RoleService(db)
    assignments = RoleAssignmentStore(db)
    member = await roles.system_role_for(catalogue["member"])
    guest = await roles.system_role_for(catalogue["guest"])
    outsider = Subject.user("dave")
    await OrganisationService(db).add_member(outsider, other_organisation_id)
    await assignments.assign(member, alice, organisation_id)
    await assignments.assign(member, bob, organisation_id)
    await assignments.assign(guest, carol, organisation_id)
    await assignments.assign(member, outsider, other_organisation_id)

    result = await OverrideProtocol(db).create_override(catalogue["member"].id, organisation_id)

    assert await assignments.subjects_with_role(result.role, organisation_id) == {alice, bob}
    assert await assignments.subjects_with_role(member, organisation_id) == set()
    assert await assignments.subjects_with_role(guest, organisation_id) == {carol}
    assert await assignments.subjects_with_role(member, other_organisation_id) == {outsider}


async def test_override_migrates_legacy_organisation_role(db, catalogue, organisation_id, alice, bob) -> None:
    roles = RoleService(db)
    member = await roles.system_role_for(catalogue["member"])
    # Older data: an organisation-owned, non-override role on the system template
    legacy = Role(template=catalogue["member"], organisation_id=organisation_id, overrides_system=False)
    db.add(legacy)
    await db.commit()
    legacy_id = legacy.id
    assignments = RoleAssignmentStore(db)
    await assignments.assign(legacy, alice, organisation_id)
    await assignments.assign(member, bob, organisation_id)

    result = await OverrideProtocol(db).create_override(catalogue["member"].id, organisation_id)

    assert result.migrated_user_count == 2
    assert result.role.system_role_id == member.id
    assert await assignments.subjects_with_role(result.role, organisation_id) == {alice, bob}
    assert await db.get(Role, legacy_id) is None


async def test_failed_override_changes_nothing(db, catalogue, organisation_id, alice) -> None:
    template_id = catalogue["member"].id
    member = await RoleService(db).system_role_for(catalogue["member"])
    member_id = member.id
    await RoleAssignmentStore(db).assign(member, alice, organisation_id)
    before = await _assignment_rows(db, organisation_id)

    with pytest.raises(UnknownPermission):
        await OverrideProtocol(db).create_override(template_id, organisation_id, permission_names=["task.fly"])
    with pytest.raises(CannotRemoveAllPermissions):
        await OverrideProtocol(db).create_override(template_id, organisation_id, permission_names=[])

    assert await _assignment_rows(db, organisation_id) == before
    assert await RoleService(db).override_role_for(await db.get(Role, member_id), organisation_id) is None


# ============================================================================
# revert_to_system
# ============================================================================

async def test_revert_is_inverse_of_override(db, catalogue, organisation_id, alice, bob, carol) -> None:
    roles = RoleService(db)
    assignments = RoleAssignmentStore(db)
    member = await roles.system_role_for(catalogue["member"])
    guest = await roles.system_role_for(catalogue["guest"])
    await assignments.assign(member, alice, organisation_id)
    await assignments.assign(member, bob, organisation_id)
    await assignments.assign(guest, bob, organisation_id)
    await assignments.assign(guest, carol, organisation_id)
    before = await _assignment_rows(db, organisation_id)

    protocol = OverrideProtocol(db)
    result = await protocol.create_override(catalogue["member"].id, organisation_id, permission_names=["task.view"])
    assert await _assignment_rows(db, organisation_id) != before

    reverted = await protocol.revert_to_system(result.role.id, organisation_id)

    assert reverted.migrated_user_count == 2
    assert reverted.template_deleted is True
    assert await _assignment_rows(db, organisation_id) == before


async def test_revert_removes_override_and_allows_new_override(db, catalogue, organisation_id) -> None:
    protocol = OverrideProtocol(db)
    member_id = catalogue["member"].id
    first = await protocol.create_override(member_id, organisation_id)
    first_role_id = first.role.id

    await protocol.revert_to_system(first_role_id, organisation_id)

    assert await db.get(Role, first_role_id) is None
    second = await protocol.create_override(member_id, organisation_id)
    assert second.role.id != first_role_id

    actions = [entry.action for entry in await list_audit_logs(db, organisation_id=organisation_id)]
    assert sorted(actions) == ["create_override", "create_override", "revert_to_system"]


async def test_revert_requires_override_role(db, catalogue, organisation_id) -> None:
    protocol = OverrideProtocol(db)
    custom = await RoleService(db).create_custom_role(organisation_id, "reviewer", ["task.view"])
    custom_id = custom.id
    system_role = await RoleService(db).system_role_for(catalogue["member"])
    system_role_id = system_role.id

    with pytest.raises(NotAnOverride):
        await protocol.revert_to_system(custom_id, organisation_id)
    with pytest.raises(NotAnOverride):
        await protocol.revert_to_system(system_role_id, organisation_id)
    with pytest.raises(RoleNotFound):
        await protocol.revert_to_system("01HZZZZZZZZZZZZZZZZZZZZZZZ", organisation_id)


async def test_revert_checks_organisation(db, catalogue, organisation_id, other_organisation_id) -> None:
    protocol = OverrideProtocol(db)
    result = await protocol.create_override(catalogue["member"].id, organisation_id)
    role_id = result.role.id

    with pytest.raises(TemplateOwnershipMismatch):
        await protocol.revert_to_system(role_id, other_organisation_id)
    assert await db.get(Role, role_id) is not None


# ============================================================================
# Implicit overrides through permission changes
# ============================================================================

async def test_add_permissions_to_system_role_creates_override(db, catalogue, organisation_id, alice) -> None:
    roles = RoleService(db)
    member = await roles.system_role_for(catalogue["member"])
    await RoleAssignmentStore(db).assign(member, alice, organisation_id)

    role = await OverrideProtocol(db).add_permissions(member.id, organisation_id, ["task.update"])

    assert role.overrides_system is True
    assert role.template.permission_names == {"task.view", "task.create", "project.view", "task.update"}
    assert catalogue["member"].permission_names == {"task.view", "task.create", "project.view"}
    assert await PermissionResolver(db).has_permission(alice, "task.update", organisation_id)


async def test_permission_changes_reuse_existing_override(db, catalogue, organisation_id) -> None:
    protocol = OverrideProtocol(db)
    member = await RoleService(db).system_role_for(catalogue["member"])
    override = await protocol.add_permissions(member.id, organisation_id, ["task.update"])

    again = await protocol.remove_permissions(member.id, organisation_id, ["task.create"])

    assert again.id == override.id
    assert again.template.permission_names == {"task.view", "project.view", "task.update"}


async def test_remove_permissions_floor(db, catalogue, organisation_id) -> None:
    protocol = OverrideProtocol(db)
    guest = await RoleService(db).system_role_for(catalogue["guest"])
    custom = await RoleService(db).create_custom_role(organisation_id, "reviewer", ["task.view"])

    with pytest.raises(CannotRemoveAllPermissions):
        await protocol.remove_permissions(guest.id, organisation_id, ["task.view"])
    with pytest.raises(CannotRemoveAllPermissions):
        await protocol.remove_permissions(custom.id, organisation_id, ["task.view"])


async def test_permission_changes_on_custom_role(db, catalogue, organisation_id) -> None:
    protocol = OverrideProtocol(db)
    custom = await RoleService(db).create_custom_role(organisation_id, "reviewer", ["task.view"])

    role = await protocol.add_permissions(custom.id, organisation_id, ["task.update", "task.assign"])
    role = await protocol.remove_permissions(role.id, organisation_id, ["task.assign"])

    assert role.id == custom.id
    assert role.template.permission_names == {"task.view", "task.update"}


async def test_permission_changes_on_foreign_role(db, catalogue, organisation_id, other_organisation_id) -> None:
    foreign = await RoleService(db).create_custom_role(other_organisation_id, "auditor", ["task.view"])

    with pytest.raises(RoleNotFound):
        await OverrideProtocol(db).add_permissions(foreign.id, organisation_id, ["task.update"])


async def test_update_role(db, catalogue, organisation_id) -> None:
    protocol = OverrideProtocol(db)
    member = await RoleService(db).system_role_for(catalogue["member"])

    unchanged = await protocol.update_role(member.id, organisation_id)
    assert unchanged.id == member.id

    override = await protocol.update_role(member.id, organisation_id, {"display_name": "Contributor"})
    assert override.overrides_system is True
    assert override.template.display_name == "Contributor"

    updated = await protocol.update_role(member.id, organisation_id, {"level": 50}, ["task.view"])
    assert updated.id == override.id
    assert updated.template.level == 50
    assert updated.template.permission_names == {"task.view"}
    assert catalogue["member"].level == 40
