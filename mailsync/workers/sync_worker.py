"""
Mailbox Sync Worker

Executes one background sync run for one account: refreshes the folder
list, pages through each enabled folder (or the account-wide page token)
and feeds every page to the ingestion pipeline. Resume positions are
written only after the page they belong to has been ingested.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from mailsync.core.config import SyncSettings, settings as default_settings
from mailsync.core.credentials import CredentialGate
from mailsync.folders.taxonomy import (
    classify_folder,
    default_display_name,
    folder_sort_order,
    validate_folder_structure,
)
from mailsync.providers.email.base import (
    ConfigurationError,
    Credential,
    CursorScope,
    MailProviderAdapter,
    PermissionDeniedError,
    RateLimitError,
    SyncContext,
)
from mailsync.providers.registry import create_adapter
from mailsync.services.ingestion import IngestionPipeline, RunProgress
from mailsync.services.retry import RetryScheduler, classify_error
from mailsync.workers.scheduler import JobScheduler

logger = logging.getLogger(__name__)

# Folder failures of these kinds abort the whole run.
RUN_ABORTING_ERRORS = (PermissionDeniedError, ConfigurationError, RateLimitError)


class CancelledRun(Exception):
    """The run no longer owns the account (cancelled or reset)."""
    pass


class SyncWorker:
    """
    Worker for syncing one mailbox account.

    Handles:
    - Folder discovery and classification
    - Page loops per folder, or per account for page-token providers
    - Progress heartbeats and cancellation checkpoints
    - Handing failures to the retry scheduler
    """

    def __init__(
        self,
        db,
        credential_gate: CredentialGate,
        scheduler: JobScheduler,
        pipeline: Optional[IngestionPipeline] = None,
        settings: Optional[SyncSettings] = None,
        adapter_factory: Callable[..., MailProviderAdapter] = create_adapter,
        retry: Optional[RetryScheduler] = None
    ):
        self.db = db
        self.accounts = db.accounts
        self.folders = db.folders
        self.messages = db.messages
        self.credential_gate = credential_gate
        self.settings = settings or default_settings
        self.pipeline = pipeline or IngestionPipeline(
            db.messages, db.accounts, settings=self.settings
        )
        self.adapter_factory = adapter_factory
        self.retry = retry or RetryScheduler(db.accounts, scheduler, self.settings)

    async def run(self, payload: Dict[str, Any]) -> Optional[RunProgress]:
        """
        Execute a sync run.

        Args:
            payload: Job payload produced by ``SyncContext.to_payload``

        Returns:
            Run counters when the run completed, None otherwise
        """
        context = SyncContext.from_payload(payload)
        account = await self.accounts.get(context.account_id)
        if not account or account.get("sync_lease") != context.lease:
            logger.info(f"Skipping sync run for account {context.account_id}: lease no longer held")
            return None

        adapter = self.adapter_factory(account["provider"], self.settings)
        progress = RunProgress()
        logger.info(
            f"Starting {context.mode.value} sync for account {context.account_id} "
            f"({adapter.kind.value}, trigger={context.trigger.value}, attempt {context.attempt})"
        )

        try:
            credential = await self.credential_gate.get_valid_credential(context.account_id)
            await self._checkpoint(context, progress)

            folders = await self._refresh_folders(adapter, account, credential)
            folders_by_provider_id = {f["provider_folder_id"]: f for f in folders}

            if adapter.cursor_scope == CursorScope.ACCOUNT:
                await self._sync_account(
                    adapter, account, credential, context, folders_by_provider_id, progress
                )
                await self._refresh_counts(context.account_id, folders)
                failed_folders: List[str] = []
            else:
                failed_folders = await self._sync_folders(
                    adapter, account, credential, context, folders, folders_by_provider_id, progress
                )

            summary = None
            if failed_folders:
                summary = f"{len(failed_folders)} folder(s) failed to sync: {', '.join(failed_folders)}"

            completed = await self.accounts.complete(
                context.account_id, context.lease, progress.processed,
                datetime.now(timezone.utc), error_summary=summary,
            )
            if not completed:
                logger.info(f"Sync for account {context.account_id} finished after losing its lease")
                return None

            logger.info(
                f"Sync for account {context.account_id} completed: "
                f"{progress.processed} processed, {progress.inserted} new, {progress.updated} updated"
            )
            return progress

        except CancelledRun:
            logger.info(f"Sync for account {context.account_id} stopped: run was cancelled")
            return None

        except Exception as e:
            await self.retry.handle_failure(account, context, e, adapter.backs_off_on_rate_limit)
            return None

        finally:
            await adapter.close()

    async def _checkpoint(self, context: SyncContext, progress: RunProgress):
        """Stop when the account was cancelled; otherwise refresh the heartbeat."""
        if not await self.accounts.holds_lease(context.account_id, context.lease):
            raise CancelledRun(context.account_id)
        await self.accounts.record_progress(
            context.account_id, context.lease, progress.processed, datetime.now(timezone.utc)
        )

    async def _refresh_folders(
        self,
        adapter: MailProviderAdapter,
        account: Dict[str, Any],
        credential: Credential
    ) -> List[Dict[str, Any]]:
        account_id = str(account["_id"])
        remote_folders = await adapter.list_folders(account, credential)
        now = datetime.now(timezone.utc)

        stored = []
        for remote in remote_folders:
            classification = classify_folder(remote.display_name, adapter.kind.value, remote.flags)
            folder_type = classification.folder_type
            stored.append(await self.folders.upsert(
                account_id,
                remote.to_dict(),
                classification.to_dict(),
                default_display_name(folder_type, remote.display_name, remote.delimiter),
                folder_sort_order(folder_type),
                now,
            ))

        structure = validate_folder_structure(f["folder_type"] for f in stored)
        if not structure["valid"]:
            logger.warning(f"Account {account_id} has no inbox folder (missing: {structure['missing']})")

        stored.sort(key=lambda f: f.get("sort_order", 100))
        return stored

    async def _sync_account(
        self,
        adapter: MailProviderAdapter,
        account: Dict[str, Any],
        credential: Credential,
        context: SyncContext,
        folders_by_provider_id: Dict[str, Dict[str, Any]],
        progress: RunProgress
    ):
        """Page through an account-scoped sweep, persisting the page token after each page."""
        marker = None
        while True:
            await self._checkpoint(context, progress)
            page = await adapter.sync_folder(account, None, credential, context, page_marker=marker)
            await self.pipeline.ingest_page(
                account, folders_by_provider_id, page.messages, context, progress
            )
            await self.accounts.save_cursor(context.account_id, context.lease, page.next_page_marker)
            if not page.has_more:
                break
            marker = page.next_page_marker

    async def _sync_folders(
        self,
        adapter: MailProviderAdapter,
        account: Dict[str, Any],
        credential: Credential,
        context: SyncContext,
        folders: List[Dict[str, Any]],
        folders_by_provider_id: Dict[str, Dict[str, Any]],
        progress: RunProgress
    ) -> List[str]:
        """Sync each enabled folder in turn. Returns the names of folders that failed."""
        failed = []
        for folder in folders:
            if not folder.get("sync_enabled") or not adapter.should_sync_folder(folder):
                continue
            try:
                await self._sync_folder(
                    adapter, account, folder, credential, context, folders_by_provider_id, progress
                )
            except (CancelledRun,) + RUN_ABORTING_ERRORS:
                await self.folders.mark_idle(folder["_id"], datetime.now(timezone.utc))
                raise
            except Exception as e:
                name = folder.get("display_name", folder["provider_folder_id"])
                logger.error(f"Failed to sync folder {name} for account {context.account_id}: {e}")
                failed.append(name)
                await self.folders.mark_error(
                    folder["_id"], classify_error(e).message, datetime.now(timezone.utc)
                )
        return failed

    async def _sync_folder(
        self,
        adapter: MailProviderAdapter,
        account: Dict[str, Any],
        folder: Dict[str, Any],
        credential: Credential,
        context: SyncContext,
        folders_by_provider_id: Dict[str, Dict[str, Any]],
        progress: RunProgress
    ):
        await self.folders.mark_syncing(folder["_id"], datetime.now(timezone.utc))

        marker = None
        new_cursor = None
        while True:
            await self._checkpoint(context, progress)
            page = await adapter.sync_folder(account, folder, credential, context, page_marker=marker)
            await self.pipeline.ingest_page(
                account, folders_by_provider_id, page.messages, context, progress
            )
            if page.new_cursor:
                new_cursor = page.new_cursor
            if not page.has_more:
                break
            marker = page.next_page_marker

        # The delta link only moves once every page of this round is stored.
        if adapter.cursor_scope == CursorScope.FOLDER and new_cursor:
            await self.folders.save_cursor(folder["_id"], new_cursor)

        await self._refresh_counts(context.account_id, [folder])

    async def _refresh_counts(self, account_id: str, folders: List[Dict[str, Any]]):
        now = datetime.now(timezone.utc)
        for folder in folders:
            count = await self.messages.count_in_folder(account_id, folder["_id"])
            await self.folders.set_message_count(folder["_id"], count)
            await self.folders.mark_synced(folder["_id"], now)
