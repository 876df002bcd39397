"""
Sync orchestrator.

The single entry point for starting a mailbox sync. Enforces at most one
run per account, picks the sync mode, and dispatches the run as a
background job. Also hosts the maintenance operations: the stuck-run
watchdog and the scheduled incremental sweep.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from mailsync.core.config import SyncSettings, settings as default_settings
from mailsync.core.store import AccountStatus
from mailsync.providers.email.base import (
    CategorizationPolicy,
    ProviderKind,
    SyncContext,
    SyncMode,
    SyncTrigger,
)
from mailsync.workers.scheduler import SYNC_JOB, JobScheduler

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Sync timed out"


@dataclass
class SyncDispatch:
    """Returned to the caller once a run has been scheduled."""
    account_id: str
    run_id: str
    mode: SyncMode
    trigger: SyncTrigger
    categorization: CategorizationPolicy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "run_id": self.run_id,
            "mode": self.mode.value,
            "trigger": self.trigger.value,
            "categorization": self.categorization.value,
        }


class SyncOrchestrator:
    """Starts, cancels and supervises sync runs."""

    def __init__(
        self,
        accounts,
        scheduler: JobScheduler,
        settings: Optional[SyncSettings] = None
    ):
        self.accounts = accounts
        self.scheduler = scheduler
        self.settings = settings or default_settings

    def resolve_categorization(
        self,
        mode: SyncMode,
        trigger: SyncTrigger,
        override: Optional[CategorizationPolicy] = None
    ) -> CategorizationPolicy:
        """Initial sweeps always categorize by folder; otherwise the configured policy applies."""
        if override is not None:
            return CategorizationPolicy(override)
        if mode == SyncMode.INITIAL:
            return CategorizationPolicy.FOLDER
        configured = self.settings.categorization_policy.get(trigger.value)
        return CategorizationPolicy(configured) if configured else CategorizationPolicy.FOLDER

    async def trigger_sync(
        self,
        account_id: str,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        mode: Optional[SyncMode] = None,
        categorization: Optional[CategorizationPolicy] = None
    ) -> SyncDispatch:
        """
        Start a sync run for an account.

        Args:
            account_id: Account to sync
            trigger: Why the run was requested
            mode: Explicit mode; detected from the account when omitted
            categorization: Explicit categorization policy override

        Returns:
            SyncDispatch with the scheduled run id

        Raises:
            AccountNotFoundError: Unknown account
            SyncAlreadyRunningError: A run is already active or being dispatched
            DispatchError: The background job could not be scheduled
        """
        account = await self.accounts.get(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        if account.get("status") == AccountStatus.SYNCING.value:
            raise SyncAlreadyRunningError(f"Sync already in progress for account {account_id}")

        # Fails fast on unknown providers before anything is claimed.
        ProviderKind(account["provider"])

        now = datetime.now(timezone.utc)
        lease = uuid.uuid4().hex
        stale_before = now - timedelta(seconds=self.settings.dispatch_claim_timeout_seconds)
        claimed = await self.accounts.claim(account_id, lease, now, stale_before)
        if not claimed:
            raise SyncAlreadyRunningError(f"Sync already in progress for account {account_id}")

        trigger = SyncTrigger(trigger)
        if mode is None:
            mode = SyncMode.INCREMENTAL if claimed.get("initial_sync_completed") else SyncMode.INITIAL
        mode = SyncMode(mode)
        context = SyncContext(
            account_id=account_id,
            lease=lease,
            mode=mode,
            trigger=trigger,
            categorization=self.resolve_categorization(mode, trigger, categorization),
        )

        try:
            run_id = await self.scheduler.schedule(SYNC_JOB, context.to_payload())
        except Exception as e:
            logger.error(f"Failed to dispatch sync for account {account_id}: {e}")
            await self.accounts.release_claim(account_id, lease, f"Failed to start sync: {e}")
            raise DispatchError(f"Failed to start sync: {e}")

        marked = await self.accounts.mark_dispatched(
            account_id, lease, run_id, mode.value, trigger.value, datetime.now(timezone.utc)
        )
        if not marked:
            # Cancelled between claim and dispatch; the run will find no lease and exit.
            logger.warning(f"Account {account_id} changed while dispatching run {run_id}")

        logger.info(
            f"Dispatched {mode.value} sync for account {account_id} "
            f"(trigger={trigger.value}, run={run_id})"
        )
        return SyncDispatch(
            account_id=account_id,
            run_id=run_id,
            mode=mode,
            trigger=trigger,
            categorization=context.categorization,
        )

    async def get_sync_status(self, account_id: str) -> Dict[str, Any]:
        account = await self.accounts.get(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return {
            "account_id": account_id,
            "status": account.get("status", AccountStatus.ACTIVE.value),
            "progress": account.get("sync_progress", 0),
            "mode": account.get("sync_mode"),
            "trigger": account.get("sync_trigger"),
            "attempt": account.get("sync_attempt"),
            "run_id": account.get("sync_run_id"),
            "initial_sync_completed": bool(account.get("initial_sync_completed")),
            "needs_reconnection": bool(account.get("needs_reconnection")),
            "last_sync_at": account.get("last_sync_at"),
            "last_successful_sync_at": account.get("last_successful_sync_at"),
            "last_sync_error": account.get("last_sync_error"),
            "next_sync_after": account.get("next_sync_after"),
        }

    async def cancel_sync(self, account_id: str) -> bool:
        """
        Return the account to idle. The running job notices at its next
        checkpoint and stops without touching the account again.
        """
        account = await self.accounts.get(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        cancelled = await self.accounts.cancel(account_id)
        if cancelled:
            logger.info(f"Cancelled sync for account {account_id}")
        return cancelled

    async def reset_stuck_syncs(self, now: Optional[datetime] = None) -> int:
        """Reset accounts whose run has not reported progress within the watchdog timeout."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=self.settings.watchdog_timeout_minutes)

        reset = 0
        for account_id in await self.accounts.find_stuck(cutoff):
            if await self.accounts.reset_stuck(account_id, cutoff, TIMEOUT_MESSAGE, now):
                logger.warning(f"Reset stuck sync for account {account_id}")
                reset += 1
        if reset:
            logger.info(f"Watchdog reset {reset} stuck sync(s)")
        return reset

    async def trigger_scheduled_syncs(self, now: Optional[datetime] = None) -> int:
        """Start an incremental run for every account due a scheduled sync."""
        now = now or datetime.now(timezone.utc)
        started = 0
        for account_id in await self.accounts.find_schedulable(now):
            try:
                await self.trigger_sync(account_id, trigger=SyncTrigger.SCHEDULED)
                started += 1
            except SyncAlreadyRunningError:
                continue
            except (DispatchError, ValueError) as e:
                logger.error(f"Scheduled sync for account {account_id} not started: {e}")
        return started

    async def run_watchdog(self, payload: Dict[str, Any]) -> int:
        return await self.reset_stuck_syncs()

    async def run_scheduled_sweep(self, payload: Dict[str, Any]) -> int:
        return await self.trigger_scheduled_syncs()


# ==================== Custom Exceptions ====================

class OrchestratorError(Exception):
    """Base exception for orchestrator failures."""
    pass


class AccountNotFoundError(OrchestratorError):
    pass


class SyncAlreadyRunningError(OrchestratorError):
    pass


class DispatchError(OrchestratorError):
    """The background job system refused the run."""
    pass
