"""
Subjects are whatever holds roles and permission overrides.

Only users exist today, but every store keys on the (id, type) pair so new
subject kinds need no changes to resolution.
"""
from pydantic import BaseModel, ConfigDict, Field

USER = "user"


class Subject(BaseModel):
    """A role/permission holder identified by id and type."""
    id: str = Field(..., min_length=1, max_length=64)
    type: str = Field(USER, min_length=1, max_length=50)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def user(cls, user_id: str) -> "Subject":
        return cls(id=user_id, type=USER)

    def __str__(self) -> str:
        return f"{self.type}:{self.id}"
