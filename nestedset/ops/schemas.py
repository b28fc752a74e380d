from enum import Enum

from pydantic import BaseModel, Field


class MoveDirection(str, Enum):
    """Where a moved node lands relative to the reference node."""

    BEFORE = "before"  # left sibling of the reference
    AFTER = "after"  # right sibling of the reference
    INNER = "inner"  # first child of the reference


class CreateNodeResponse(BaseModel):
    id: int
    parent_id: int | None
    depth: int
    lft: int
    rgt: int


class MoveNodeResponse(BaseModel):
    """Response model for node move operation."""

    success: bool = Field(..., description="Whether the move operation was successful")
    moved: bool = Field(..., description="False when the node already sat at the requested position")
    message: str = Field(..., description="Status message")


class TreeNodeResponse(BaseModel):
    id: int
    label: str | None = None
    depth: int
    lft: int
    rgt: int
    children: list["TreeNodeResponse"] = []
