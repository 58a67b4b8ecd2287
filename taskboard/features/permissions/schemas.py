"""
Pydantic schemas and value objects for permissions.
"""
from typing import Annotated, Iterable
from pydantic import BaseModel, ConfigDict, StringConstraints, TypeAdapter


# "resource.action" (e.g. "task.changeStatus") or a custom dashed identifier
# (e.g. "manage-roles")
PERMISSION_NAME_PATTERN = r"^[A-Za-z][A-Za-z0-9_-]*(\.[A-Za-z][A-Za-z0-9_-]*)?$"

PermissionName = Annotated[
    str,
    StringConstraints(strip_whitespace=True, min_length=1, max_length=100, pattern=PERMISSION_NAME_PATTERN),
]

_permission_name_adapter = TypeAdapter(PermissionName)
_permission_names_adapter = TypeAdapter(list[PermissionName])


def validate_permission_name(name: str) -> str:
    """Validate and normalize one permission name; raises pydantic.ValidationError."""
    return _permission_name_adapter.validate_python(name)


def validate_permission_names(names: Iterable[str]) -> list[str]:
    """Validate names and drop duplicates while keeping their order."""
    validated = _permission_names_adapter.validate_python(list(names))
    return list(dict.fromkeys(validated))


def describe_permission(name: str) -> tuple[str, str, str]:
    """
    Derive (display_name, description, category) from a permission name.

    "task.changeStatus" -> ("ChangeStatus Task", "Allows user to changeStatus tasks", "Task")
    "manage-roles" -> ("Manage Roles", "Allows user to Manage Roles", "General")
    """
    if "." in name:
        model, action = name.split(".", 1)
        return (
            f"{action[:1].upper()}{action[1:]} {model[:1].upper()}{model[1:]}",
            f"Allows user to {action} {model}s",
            f"{model[:1].upper()}{model[1:]}",
        )
    display_name = " ".join(part[:1].upper() + part[1:] for part in name.replace("_", "-").split("-"))
    return display_name, f"Allows user to {display_name}", "General"


class PermissionResponse(BaseModel):
    """Schema for a registered permission."""
    id: str
    name: str
    display_name: str | None = None
    description: str | None = None
    category: str | None = None

    model_config = ConfigDict(from_attributes=True)


class OverrideEntry(BaseModel):
    """One direct grant or denial held by a subject in an organisation."""
    permission: str
    grant: bool

    model_config = ConfigDict(frozen=True)
