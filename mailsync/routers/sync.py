"""
Mail Sync Router

Starts, inspects and cancels mailbox sync runs, and exposes the
stuck-run watchdog for manual maintenance.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request, status

from mailsync.routers.schemas import (
    ResetStuckResponse,
    SuccessResponse,
    SyncDispatchResponse,
    SyncRequest,
    SyncStatusResponse,
)
from mailsync.services.orchestrator import (
    AccountNotFoundError,
    DispatchError,
    SyncAlreadyRunningError,
    SyncOrchestrator,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["mail-sync"])


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Get the orchestrator created at startup."""
    return request.app.state.orchestrator


@router.post(
    "/accounts/{account_id}/sync",
    response_model=SyncDispatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_sync(request: Request, account_id: str, body: Optional[SyncRequest] = None):
    """Schedule a sync run. Returns as soon as the run is dispatched."""
    body = body or SyncRequest()
    orchestrator = get_orchestrator(request)
    try:
        dispatch = await orchestrator.trigger_sync(
            account_id,
            trigger=body.trigger,
            mode=body.mode,
            categorization=body.categorization,
        )
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except DispatchError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return SyncDispatchResponse(**dispatch.to_dict())


@router.get("/accounts/{account_id}/sync", response_model=SyncStatusResponse)
async def get_sync_status(request: Request, account_id: str):
    try:
        sync_status = await get_orchestrator(request).get_sync_status(account_id)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return SyncStatusResponse(**sync_status)


@router.post("/accounts/{account_id}/sync/cancel", response_model=SuccessResponse)
async def cancel_sync(request: Request, account_id: str):
    try:
        cancelled = await get_orchestrator(request).cancel_sync(account_id)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if cancelled:
        return SuccessResponse(message="Sync cancelled")
    return SuccessResponse(message="No sync in progress")


@router.post("/maintenance/reset-stuck", response_model=ResetStuckResponse)
async def reset_stuck_syncs(request: Request):
    """Run the stuck-sync watchdog now."""
    reset = await get_orchestrator(request).reset_stuck_syncs()
    return ResetStuckResponse(reset=reset)
