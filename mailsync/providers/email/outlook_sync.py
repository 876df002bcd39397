"""
Outlook/Microsoft 365 adapter.

Syncs mail through Microsoft Graph delta queries. Each folder keeps its own
delta link; ``@odata.nextLink`` pages are followed within a run and the
final ``@odata.deltaLink`` becomes the folder's cursor for the next run.
"""

import logging
from datetime import datetime
from typing import Optional, List, Dict, Any

import httpx

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
    UnknownSyncError,
)
from mailsync.providers.registry import register_adapter

logger = logging.getLogger(__name__)


MESSAGE_FIELDS = ",".join([
    "id",
    "subject",
    "from",
    "toRecipients",
    "ccRecipients",
    "receivedDateTime",
    "sentDateTime",
    "isRead",
    "flag",
    "hasAttachments",
    "bodyPreview",
    "conversationId",
    "internetMessageId",
    "categories",
])


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable Graph timestamp: {value}")
        return None


def _recipients(items: Optional[List[Dict[str, Any]]]) -> List[Dict[str, str]]:
    result = []
    for item in items or []:
        address = item.get("emailAddress", {})
        if address.get("address"):
            result.append({"address": address["address"], "name": address.get("name", "")})
    return result


def parse_graph_message(folder_id: str, msg: Dict[str, Any]) -> EmailMessage:
    """Map a Graph message resource to the normalized message shape."""
    sender = msg.get("from", {}).get("emailAddress", {})
    return EmailMessage(
        provider_message_id=msg["id"],
        subject=msg.get("subject") or "",
        from_address=sender.get("address", ""),
        from_name=sender.get("name", ""),
        to_addresses=_recipients(msg.get("toRecipients")),
        cc_addresses=_recipients(msg.get("ccRecipients")),
        sent_at=_parse_datetime(msg.get("sentDateTime")),
        received_at=_parse_datetime(msg.get("receivedDateTime")),
        snippet=msg.get("bodyPreview", ""),
        is_read=msg.get("isRead", False),
        is_starred=msg.get("flag", {}).get("flagStatus") == "flagged",
        has_attachments=msg.get("hasAttachments", False),
        folder_provider_id=folder_id,
        label_ids=list(msg.get("categories") or []),
        provider_thread_id=msg.get("conversationId"),
        message_id_header=msg.get("internetMessageId"),
    )


def raise_for_graph_status(response: httpx.Response):
    """Translate a failed Graph response into the sync error hierarchy."""
    status = response.status_code
    if status < 400:
        return

    try:
        error = response.json().get("error", {})
    except ValueError:
        error = {}
    detail = error.get("message") or response.text[:200]

    if status in (401, 403):
        raise PermissionDeniedError(f"Graph access denied: {detail}", status_code=status)
    if status in (429, 503) and "Retry-After" in response.headers:
        retry_after = response.headers.get("Retry-After", "")
        raise RateLimitError(
            f"Graph throttled the request: {detail}",
            retry_after=int(retry_after) if retry_after.isdigit() else None,
            status_code=status,
        )
    if status == 429:
        raise RateLimitError(f"Graph throttled the request: {detail}", status_code=status)
    raise UnknownSyncError(f"Graph API error {status}: {detail}", status_code=status)


@register_adapter(ProviderKind.MICROSOFT)
class OutlookAdapter(MailProviderAdapter):
    """
    Microsoft Graph adapter.

    Folder enumeration walks ``childFolders`` breadth-first. Message sync
    uses per-folder delta links.
    """

    kind = ProviderKind.MICROSOFT
    cursor_scope = CursorScope.FOLDER

    def __init__(self, settings=None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(settings)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._token: Optional[str] = None

    @property
    def base_url(self) -> str:
        return self.settings.graph_base_url.rstrip("/")

    def _get_client(self, credential: Credential) -> httpx.AsyncClient:
        if self._client is None or self._token != credential.access_token:
            self._client = httpx.AsyncClient(
                headers={
                    "Authorization": f"Bearer {credential.access_token}",
                    "Prefer": f"odata.maxpagesize={self.settings.graph_page_size}",
                },
                timeout=self.settings.provider_timeout_seconds,
                transport=self._transport,
            )
            self._token = credential.access_token
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
        self._client = None
        self._token = None

    async def _get(
        self,
        credential: Credential,
        url: str,
        params: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        client = self._get_client(credential)
        try:
            return await client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Graph request timed out: {e}")
        except httpx.TransportError as e:
            raise NetworkError(f"Graph connection failed: {e}")

    async def _get_json(self, credential: Credential, url: str) -> Dict[str, Any]:
        response = await self._get(credential, url)
        raise_for_graph_status(response)
        return response.json()

    async def _child_folders(
        self,
        credential: Credential,
        parent_id: Optional[str]
    ) -> List[Dict[str, Any]]:
        if parent_id:
            url = f"{self.base_url}/me/mailFolders/{parent_id}/childFolders"
        else:
            url = f"{self.base_url}/me/mailFolders"

        folders = []
        while url:
            data = await self._get_json(credential, url)
            folders.extend(data.get("value", []))
            url = data.get("@odata.nextLink")
        return folders

    async def list_folders(
        self,
        account: Dict[str, Any],
        credential: Credential
    ) -> List[RemoteFolder]:
        folders: List[RemoteFolder] = []
        queue = [(f, None, "") for f in await self._child_folders(credential, None)]

        while queue:
            data, parent_id, parent_path = queue.pop(0)
            name = data.get("displayName", "")
            path = f"{parent_path}/{name}" if parent_path else name
            folders.append(RemoteFolder(
                provider_folder_id=data["id"],
                display_name=name,
                item_count=data.get("totalItemCount", 0),
                unread_count=data.get("unreadItemCount", 0),
                parent_id=parent_id,
                path=path,
            ))
            if data.get("childFolderCount", 0) > 0:
                for child in await self._child_folders(credential, data["id"]):
                    queue.append((child, data["id"], path))

        logger.info(f"Enumerated {len(folders)} Outlook folders for account {account['_id']}")
        return folders

    def should_sync_folder(self, folder: Dict[str, Any]) -> bool:
        excluded = {name.casefold() for name in self.settings.outlook_excluded_folders}
        name = (folder.get("raw_name") or folder.get("display_name") or "").casefold()
        return name not in excluded

    async def sync_folder(
        self,
        account: Dict[str, Any],
        folder: Optional[Dict[str, Any]],
        credential: Credential,
        context: SyncContext,
        page_marker: Optional[str] = None
    ) -> FolderPage:
        folder_id = folder["provider_folder_id"]
        cursor = folder.get("sync_cursor")

        if page_marker:
            response = await self._get(credential, page_marker)
        elif cursor:
            response = await self._get(credential, cursor)
            if response.status_code == 410:
                # Delta token expired server side; start a fresh delta round.
                logger.warning(f"Delta link expired for folder {folder_id}, restarting delta")
                response = await self._initial_delta(credential, folder_id)
        else:
            response = await self._initial_delta(credential, folder_id)

        raise_for_graph_status(response)
        data = response.json()

        messages = [
            parse_graph_message(folder_id, item)
            for item in data.get("value", [])
            if "@removed" not in item
        ]
        return FolderPage(
            messages=messages,
            new_cursor=data.get("@odata.deltaLink"),
            next_page_marker=data.get("@odata.nextLink"),
        )

    async def _initial_delta(self, credential: Credential, folder_id: str) -> httpx.Response:
        return await self._get(
            credential,
            f"{self.base_url}/me/mailFolders/{folder_id}/messages/delta",
            params={"$select": MESSAGE_FIELDS},
        )
