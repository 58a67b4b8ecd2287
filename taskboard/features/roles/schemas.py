"""
Pydantic schemas for roles, templates and the override protocol.
"""
from typing import Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from taskboard.features.permissions.schemas import PermissionName
from taskboard.features.roles.models import Role


# ============================================================================
# Template Schemas
# ============================================================================

class OverrideFields(BaseModel):
    """Metadata an organisation may set on its copy of a system template."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=150)
    description: Optional[str] = Field(None, max_length=1000)
    level: Optional[int] = Field(None, ge=0)

    model_config = ConfigDict(extra="forbid")


class TemplateDefinition(BaseModel):
    """
    Declarative system template used by the definition sync.

    `permissions` is either a list of permission names or the string "all",
    meaning every registered permission at sync time.
    """
    name: str = Field(..., min_length=1, max_length=100)
    display_name: Optional[str] = Field(None, max_length=150)
    description: Optional[str] = Field(None, max_length=1000)
    level: int = Field(10, ge=0)
    can_be_deleted: bool = False
    permissions: List[PermissionName] | str = Field(default_factory=list)

    @field_validator('permissions')
    @classmethod
    def all_or_names(cls, v: Any) -> Any:
        if isinstance(v, str) and v != "all":
            raise ValueError('permissions must be a list of names or "all"')
        return v


# ============================================================================
# Override Protocol Results
# ============================================================================

class OverrideResult(BaseModel):
    role: Role
    migrated_user_count: int

    model_config = ConfigDict(arbitrary_types_allowed=True)


class RevertResult(BaseModel):
    migrated_user_count: int
    system_role_id: str
    template_deleted: bool
