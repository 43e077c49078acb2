"""
Per-request workspace context.

Authentication happens upstream; the auth boundary forwards the resolved
workspace in the ``X-Workspace-Id`` header. The value is built once per
request and passed explicitly into every core operation.
"""

from dataclasses import dataclass
from typing import Annotated
from uuid import UUID

from fastapi import Header, HTTPException, status


@dataclass(frozen=True)
class WorkspaceContext:
    """Identity of the tenant an operation runs on behalf of."""

    workspace_id: UUID


async def get_workspace_context(
    x_workspace_id: Annotated[str | None, Header()] = None,
) -> WorkspaceContext:
    """FastAPI dependency building the workspace context."""
    if not x_workspace_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "MISSING_WORKSPACE", "message": "Workspace context required"},
        )
    try:
        workspace_id = UUID(x_workspace_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "INVALID_WORKSPACE", "message": "Malformed workspace id"},
        ) from None
    return WorkspaceContext(workspace_id=workspace_id)
