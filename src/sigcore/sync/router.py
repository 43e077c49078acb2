"""
API router for provider history sync.

Starting a sync returns 202 at once; progress is polled through
``GET /api/sync/status``.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Body, Depends, status

from sigcore.dependencies import get_sync_orchestrator
from sigcore.shared.context import WorkspaceContext, get_workspace_context
from sigcore.sync.orchestrator import SyncOrchestrator
from sigcore.sync.schemas import (
    CancelSyncResponse,
    QuickSyncRequest,
    QuickSyncResponse,
    SingleSyncResponse,
    SyncOptions,
    SyncProgressResponse,
)

router = APIRouter(prefix="/api", tags=["sync"])


@router.post(
    "/sync",
    response_model=SyncProgressResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a background sync",
)
async def start_sync(
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    orchestrator: Annotated[SyncOrchestrator, Depends(get_sync_orchestrator)],
    options: Annotated[SyncOptions | None, Body()] = None,
) -> SyncProgressResponse:
    """Start syncing provider history. 409 while a sync is running."""
    progress = await orchestrator.start_sync(ctx, options)
    return SyncProgressResponse(**progress.to_dict())


@router.get("/sync/status", response_model=SyncProgressResponse)
async def get_sync_status(
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    orchestrator: Annotated[SyncOrchestrator, Depends(get_sync_orchestrator)],
) -> SyncProgressResponse:
    return SyncProgressResponse(**orchestrator.get_status(ctx).to_dict())


@router.post("/sync/cancel", response_model=CancelSyncResponse)
async def cancel_sync(
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    orchestrator: Annotated[SyncOrchestrator, Depends(get_sync_orchestrator)],
) -> CancelSyncResponse:
    return CancelSyncResponse(**orchestrator.cancel(ctx))


@router.post("/sync/quick", response_model=QuickSyncResponse)
async def quick_sync(
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    orchestrator: Annotated[SyncOrchestrator, Depends(get_sync_orchestrator)],
    request: Annotated[QuickSyncRequest | None, Body()] = None,
) -> QuickSyncResponse:
    """Refresh recently active conversations whose provider activity advanced."""
    ids = request.conversation_ids if request else None
    result = await orchestrator.quick_sync(ctx, ids)
    return QuickSyncResponse(**result.to_dict())


@router.post("/conversations/{conversation_id}/sync", response_model=SingleSyncResponse)
async def sync_conversation(
    conversation_id: UUID,
    ctx: Annotated[WorkspaceContext, Depends(get_workspace_context)],
    orchestrator: Annotated[SyncOrchestrator, Depends(get_sync_orchestrator)],
) -> SingleSyncResponse:
    result = await orchestrator.sync_single_conversation(ctx, conversation_id)
    return SingleSyncResponse(**result.to_dict())
