"""
Gmail adapter.

Gmail exposes labels rather than folders and has no usable delta cursor for
the message list, so each run sweeps ``messages.list`` page by page. The
account-level cursor holds the next page token while a sweep is in flight
and is cleared when the sweep finishes.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from email.utils import getaddresses, parseaddr
from typing import Optional, List, Dict, Any

import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from mailsync.providers.email.base import (
    CursorScope,
    Credential,
    EmailMessage,
    FolderPage,
    MailProviderAdapter,
    NetworkError,
    PermissionDeniedError,
    ProviderKind,
    RateLimitError,
    RemoteFolder,
    SyncContext,
    SyncMode,
    UnknownSyncError,
)
from mailsync.providers.registry import register_adapter

logger = logging.getLogger(__name__)

# Labels that are message attributes rather than folders.
NON_FOLDER_LABELS = {"UNREAD", "CHAT"}
RATE_LIMIT_REASONS = ("ratelimitexceeded", "userratelimitexceeded", "quotaexceeded")
INCREMENTAL_OVERLAP = timedelta(days=1)


def translate_gmail_error(error: Exception) -> Exception:
    """Map googleapiclient/httplib2 failures onto the sync error hierarchy."""
    if isinstance(error, HttpError):
        status = error.resp.status
        content = (error.content or b"").decode("utf-8", errors="replace").lower()
        if status == 429 or (status == 403 and any(r in content for r in RATE_LIMIT_REASONS)):
            retry_after = error.resp.get("retry-after")
            return RateLimitError(
                f"Gmail rate limit: {error}",
                retry_after=int(retry_after) if retry_after and str(retry_after).isdigit() else None,
                status_code=status,
            )
        if status in (401, 403):
            return PermissionDeniedError(f"Gmail access denied: {error}", status_code=status)
        return UnknownSyncError(f"Gmail API error {status}: {error}", status_code=status)
    if isinstance(error, (httplib2.HttpLib2Error, OSError)):
        return NetworkError(f"Gmail connection failed: {error}")
    return error


def _header_map(payload: Dict[str, Any]) -> Dict[str, str]:
    return {
        header.get("name", "").lower(): header.get("value", "")
        for header in payload.get("headers", [])
    }


def _addresses(value: str) -> List[Dict[str, str]]:
    return [
        {"address": address, "name": name}
        for name, address in getaddresses([value]) if address
    ] if value else []


def _has_attachments(payload: Dict[str, Any]) -> bool:
    for part in payload.get("parts", []):
        if part.get("filename"):
            return True
        if part.get("parts") and _has_attachments(part):
            return True
    return False


def parse_gmail_message(msg: Dict[str, Any]) -> EmailMessage:
    """Map a Gmail API message (format=full) to the normalized message shape."""
    labels = msg.get("labelIds", [])
    payload = msg.get("payload", {})
    headers = _header_map(payload)
    from_name, from_address = parseaddr(headers.get("from", ""))

    received_at = None
    if msg.get("internalDate"):
        received_at = datetime.fromtimestamp(int(msg["internalDate"]) / 1000, tz=timezone.utc)

    return EmailMessage(
        provider_message_id=msg["id"],
        subject=headers.get("subject", ""),
        from_address=from_address,
        from_name=from_name,
        to_addresses=_addresses(headers.get("to", "")),
        cc_addresses=_addresses(headers.get("cc", "")),
        received_at=received_at,
        sent_at=received_at,
        snippet=msg.get("snippet", ""),
        is_read="UNREAD" not in labels,
        is_starred="STARRED" in labels,
        has_attachments=_has_attachments(payload),
        label_ids=list(labels),
        provider_thread_id=msg.get("threadId"),
        message_id_header=headers.get("message-id"),
        in_reply_to=headers.get("in-reply-to") or None,
        references=headers.get("references", "").split(),
        size_bytes=int(msg.get("sizeEstimate", 0)),
    )


def _build_service(credential: Credential):
    return build(
        "gmail",
        "v1",
        credentials=Credentials(token=credential.access_token),
        cache_discovery=False,
    )


@register_adapter(ProviderKind.GMAIL)
class GmailAdapter(MailProviderAdapter):
    """
    Gmail API adapter.

    Uses a single account-scoped page token; folder assignment comes from
    the labels attached to each message.
    """

    kind = ProviderKind.GMAIL
    cursor_scope = CursorScope.ACCOUNT

    def __init__(self, settings=None, service_factory=None):
        super().__init__(settings)
        self._service_factory = service_factory or _build_service
        self._service = None
        self._token: Optional[str] = None

    def _get_service(self, credential: Credential):
        if self._service is None or self._token != credential.access_token:
            self._service = self._service_factory(credential)
            self._token = credential.access_token
        return self._service

    async def close(self):
        self._service = None
        self._token = None

    async def _execute(self, request) -> Dict[str, Any]:
        """Run a blocking googleapiclient request off the event loop."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, request.execute)
        except (HttpError, httplib2.HttpLib2Error, OSError) as e:
            raise translate_gmail_error(e)

    async def list_folders(
        self,
        account: Dict[str, Any],
        credential: Credential
    ) -> List[RemoteFolder]:
        service = self._get_service(credential)
        result = await self._execute(service.users().labels().list(userId="me"))
        labels = [
            label for label in result.get("labels", [])
            if label["id"] not in NON_FOLDER_LABELS
            and not label["id"].startswith("CATEGORY_")
        ]
        ids_by_name = {label.get("name", ""): label["id"] for label in labels}

        folders = []
        for label in labels:
            name = label.get("name", label["id"])
            detail = await self._execute(
                service.users().labels().get(userId="me", id=label["id"])
            )
            parent_name = name.rsplit("/", 1)[0] if "/" in name else None
            folders.append(RemoteFolder(
                provider_folder_id=label["id"],
                display_name=name,
                item_count=detail.get("messagesTotal", 0),
                unread_count=detail.get("messagesUnread", 0),
                parent_id=ids_by_name.get(parent_name) if parent_name else None,
                path=name,
                flags=[label.get("type", "user")],
                delimiter="/",
            ))

        logger.info(f"Enumerated {len(folders)} Gmail labels for account {account['_id']}")
        return folders

    def _query(self, account: Dict[str, Any], context: SyncContext) -> Optional[str]:
        """Bound incremental sweeps to mail newer than the last good sync."""
        last_success = account.get("last_successful_sync_at")
        if context.mode == SyncMode.INITIAL or not last_success:
            return None
        if last_success.tzinfo is None:
            last_success = last_success.replace(tzinfo=timezone.utc)
        return f"after:{int((last_success - INCREMENTAL_OVERLAP).timestamp())}"

    async def sync_folder(
        self,
        account: Dict[str, Any],
        folder: Optional[Dict[str, Any]],
        credential: Credential,
        context: SyncContext,
        page_marker: Optional[str] = None
    ) -> FolderPage:
        service = self._get_service(credential)
        params: Dict[str, Any] = {
            "userId": "me",
            "maxResults": self.settings.gmail_page_size,
            "includeSpamTrash": False,
        }
        saved_token = None if page_marker else account.get("sync_cursor")
        page_token = page_marker or saved_token
        if page_token:
            params["pageToken"] = page_token
        query = self._query(account, context)
        if query:
            params["q"] = query

        try:
            listing = await self._execute(service.users().messages().list(**params))
        except UnknownSyncError as e:
            # Saved tokens expire and do not survive a change of query.
            if not saved_token or e.status_code != 400:
                raise
            logger.warning(
                f"Saved Gmail page token rejected for account {account.get('_id')}, "
                f"restarting sweep: {e}"
            )
            params.pop("pageToken")
            listing = await self._execute(service.users().messages().list(**params))

        messages = []
        for ref in listing.get("messages", []):
            try:
                raw = await self._execute(
                    service.users().messages().get(userId="me", id=ref["id"], format="full")
                )
            except UnknownSyncError as e:
                if e.status_code == 404:
                    logger.warning(f"Gmail message {ref['id']} vanished before fetch")
                    continue
                raise
            messages.append(parse_gmail_message(raw))

        return FolderPage(
            messages=messages,
            new_cursor=None,
            next_page_marker=listing.get("nextPageToken"),
        )
