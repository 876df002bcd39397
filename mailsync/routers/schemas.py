"""
Pydantic schemas for the Mail Sync API.

Request and response models for triggering, inspecting and cancelling
mailbox sync runs.
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from mailsync.providers.email.base import CategorizationPolicy, SyncMode, SyncTrigger


class SyncRequest(BaseModel):
    """Request to start a sync run."""
    mode: Optional[SyncMode] = Field(
        default=None,
        description="initial or incremental; detected from the account when omitted"
    )
    trigger: SyncTrigger = Field(default=SyncTrigger.MANUAL)
    categorization: Optional[CategorizationPolicy] = Field(
        default=None,
        description="Override the configured categorization policy for this run"
    )


class SyncDispatchResponse(BaseModel):
    """A run that has been scheduled."""
    account_id: str
    run_id: str
    mode: SyncMode
    trigger: SyncTrigger
    categorization: CategorizationPolicy


class SyncStatusResponse(BaseModel):
    """Sync state of an account as shown in progress displays."""
    account_id: str
    status: str
    progress: int = 0
    mode: Optional[str] = None
    trigger: Optional[str] = None
    attempt: Optional[int] = None
    run_id: Optional[str] = None
    initial_sync_completed: bool = False
    needs_reconnection: bool = False
    last_sync_at: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    next_sync_after: Optional[datetime] = None


class ResetStuckResponse(BaseModel):
    reset: int


class SuccessResponse(BaseModel):
    """Generic success response."""
    success: bool = True
    message: str
