"""
Seed script to populate the permission catalogue and the system role templates.

Run this script after database initialization to create:
- Default permissions (model x action, extended actions, custom manage-*)
- Default system templates and their global roles

Safe to run repeatedly; existing rows are updated in place.

Usage:
    python -m scripts.seed_permissions
"""
import asyncio

from taskboard.core.database.engine import get_db, init_db
from taskboard.features.roles.sync import sync_permissions, sync_system_templates
from taskboard.utils import configure_logging, get_logger


log = get_logger(__name__)


MODELS = [
    "project",
    "task",
    "user",
    "organisation",
    "board",
    "status",
    "priority",
    "taskType",
    "comment",
    "attachment",
    "notification",
    "team",
    "role",
    "permission",
]

STANDARD_ACTIONS = ["viewAny", "view", "create", "update", "delete", "forceDelete", "restore"]

EXTENDED_ACTIONS = {
    "project": ["addMember", "removeMember", "changeOwner"],
    "task": [
        "assign", "changeStatus", "changePriority", "addLabel",
        "removeLabel", "moveTask", "attachFile", "detachFile",
    ],
    "organisation": ["inviteUser", "removeUser", "assignRole", "viewMetrics", "manageSettings", "exportData"],
    "board": ["reorderColumns", "addColumn", "removeColumn", "changeColumnSettings"],
    "role": ["assign", "revoke", "manage"],
    "permission": ["assign", "revoke", "manage"],
    "team": ["addMember", "removeMember", "changeLead"],
}

CUSTOM_PERMISSIONS = [
    "manage-roles",
    "manage-permissions",
    "manage-users",
    "manage-organisations",
    "manage-teams",
    "manage-projects",
    "manage-settings",
    "manage-statuses",
    "manage-changeTypes",
    "manage-priorities",
]


def default_permission_names() -> list[str]:
    names = [f"{model}.{action}" for model in MODELS for action in STANDARD_ACTIONS]
    for model, actions in EXTENDED_ACTIONS.items():
        names.extend(f"{model}.{action}" for action in actions)
    names.extend(CUSTOM_PERMISSIONS)
    return names


_VIEW = ["viewAny", "view"]


def _view(*models: str) -> list[str]:
    return [f"{model}.{action}" for model in models for action in _VIEW]


DEFAULT_ROLES = {
    "super_admin": {
        "display_name": "Super Administrator",
        "description": "System-wide administrator with access to all organisations",
        "level": 1000,
        "permissions": "all",
    },
    "admin": {
        "display_name": "Administrator",
        "description": "Full administrative access to the organisation",
        "level": 100,
        "permissions": "all",
    },
    "project_manager": {
        "display_name": "Project Manager",
        "description": "Manage projects and their resources",
        "level": 80,
        "permissions": [
            *_view("user", "team", "priority"),
            *_view("project"), "project.create", "project.update", "project.addMember", "project.removeMember",
            *_view("task"), "task.create", "task.update", "task.delete",
            "task.assign", "task.changeStatus", "task.changePriority",
            "task.addLabel", "task.removeLabel", "task.moveTask",
            *_view("board"), "board.create", "board.update", "board.reorderColumns", "board.addColumn",
            *_view("status"), "status.create", "status.update",
            *_view("comment"), "comment.create", "comment.update", "comment.delete",
            *_view("attachment"), "attachment.create", "attachment.update", "attachment.delete",
        ],
    },
    "team_leader": {
        "display_name": "Team Leader",
        "description": "Lead a team and manage team resources",
        "level": 60,
        "permissions": [
            *_view("user", "project", "board"),
            *_view("team"), "team.create", "team.update", "team.addMember", "team.removeMember", "team.changeLead",
            *_view("task"), "task.create", "task.update", "task.assign", "task.changeStatus", "task.changePriority",
            *_view("comment"), "comment.create", "comment.update",
            *_view("attachment"), "attachment.create", "attachment.delete",
        ],
    },
    "member": {
        "display_name": "Member",
        "description": "Regular organisation member",
        "level": 40,
        "permissions": [
            *_view("user", "project", "team", "board"),
            *_view("task"), "task.create", "task.changeStatus",
            *_view("comment"), "comment.create",
            *_view("attachment"), "attachment.create",
        ],
    },
    "guest": {
        "display_name": "Guest",
        "description": "Limited view-only access",
        "level": 10,
        "permissions": _view("user", "project", "task", "team", "board", "comment", "attachment"),
        "can_be_deleted": True,
    },
}


async def main():
    """Main function to seed permissions and system templates."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    # Get database session
    async for db in get_db():
        try:
            await sync_permissions(db, default_permission_names())
            await sync_system_templates(db, DEFAULT_ROLES)

            log.info("Permission seeding completed successfully!")
            log.info("")
            log.info("System templates:")
            for name, definition in DEFAULT_ROLES.items():
                log.info(f"  - {name} (level {definition['level']}): {definition['description']}")

        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            raise

        break  # Only use first session


if __name__ == "__main__":
    configure_logging()
    asyncio.run(main())
