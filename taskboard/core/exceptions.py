"""
Error taxonomy for the RBAC engine.

Validation errors are raised before any mutation begins. StoreError wraps
failures of the relational store after the unit of work was rolled back.
`status_code` is a hint for the transport layer that maps errors to responses.
"""
from typing import Iterable


class RBACError(Exception):
    """Base exception for the RBAC engine."""

    status_code = 400

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class DuplicateName(RBACError):
    """Raised when a custom template name is already taken in the organisation."""

    status_code = 409

    def __init__(self, name: str, organisation_id: str | None = None):
        self.name = name
        self.organisation_id = organisation_id
        super().__init__(f"A role template named {name!r} already exists")


class OverrideAlreadyExists(RBACError):
    """Raised when the organisation already overrides the system template."""

    status_code = 409

    def __init__(self, template_name: str, organisation_id: str):
        self.template_name = template_name
        self.organisation_id = organisation_id
        super().__init__(
            f"Organisation {organisation_id} already overrides template {template_name!r}"
        )


class NotAnOverride(RBACError):
    """Raised when reverting a role that does not override a system role."""

    status_code = 422

    def __init__(self, role_id: str):
        self.role_id = role_id
        super().__init__(f"Role {role_id} does not override a system role")


class NotASystemTemplate(RBACError):
    """Raised when an override is requested for a non-system template."""

    status_code = 422

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template {template_id} is not a system template")


class TemplateOwnershipMismatch(RBACError):
    """Raised when a template does not belong to the calling organisation."""

    status_code = 403

    def __init__(self, template_id: str, organisation_id: str):
        self.template_id = template_id
        self.organisation_id = organisation_id
        super().__init__(f"Template {template_id} does not belong to organisation {organisation_id}")


class TemplateInUse(RBACError):
    """Raised when deleting a template that roles still reference."""

    status_code = 409

    def __init__(self, count: int):
        self.count = count
        super().__init__(f"Template is used by {count} role(s)")


class SystemTemplateProtected(RBACError):
    """Raised when mutating or deleting a system template directly."""

    status_code = 403

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"System template {name!r} cannot be modified directly")


class CannotRemoveAllPermissions(RBACError):
    """Raised when a change would leave an in-use template without permissions."""

    status_code = 422

    def __init__(self, name: str | None = None):
        self.name = name
        super().__init__("Cannot remove all permissions from a role")


class RoleNotFound(RBACError):
    status_code = 404

    def __init__(self, role_id: str):
        self.role_id = role_id
        super().__init__(f"Role {role_id} not found")


class TemplateNotFound(RBACError):
    status_code = 404

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Role template {template_id} not found")


class SubjectNotInOrganisation(RBACError):
    status_code = 403

    def __init__(self, subject_id: str, organisation_id: str):
        self.subject_id = subject_id
        self.organisation_id = organisation_id
        super().__init__(f"Subject {subject_id} is not a member of organisation {organisation_id}")


class UnknownPermission(RBACError):
    """Raised when permission names are not present in the registry."""

    status_code = 422

    def __init__(self, names: Iterable[str]):
        self.names = sorted(set(names))
        super().__init__(f"Unknown permission(s): {', '.join(self.names)}")


class RoleInUse(RBACError):
    """Raised when deleting a role that still has assignments."""

    status_code = 409

    def __init__(self, count: int):
        self.count = count
        super().__init__(f"Cannot delete role with {count} assigned subject(s)")


class RoleProtected(RBACError):
    status_code = 403

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Role {name!r} is protected and cannot be deleted")


class StoreError(RBACError):
    """Raised when the relational store fails; the whole operation was rolled back."""

    status_code = 503

    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(f"Store operation failed: {cause}")
