"""
IMAP adapter.

IMAP offers no server-side change cursor usable across sessions, so every
run re-selects the target folder and sweeps sequence ranges: the whole
folder for initial or manual runs, a bounded recent window otherwise.
"""

import asyncio
import email
import email.header
import email.utils
import logging
import re
import ssl
from email.message import Message
from typing import Optional, List, Dict, Any, Tuple

import aioimaplib

from mailsync.providers.email.base import (
    ConfigurationError,
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

LIST_PATTERN = re.compile(
    r'\((?P<flags>[^)]*)\)\s+(?:"(?P<delimiter>[^"]*)"|NIL)\s+"?(?P<name>[^"]+)"?'
)
FETCH_START = re.compile(r"^(?P<seq>\d+)\s+FETCH\b")
RATE_LIMIT_MARKERS = ("limit", "throttl", "too many", "try again later")
FETCH_ITEMS = "(UID FLAGS RFC822.SIZE BODY.PEEK[])"


def _text(line) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


def _quote(mailbox: str) -> str:
    return '"' + mailbox.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _check(response, action: str):
    """Raise the matching sync error for a non-OK IMAP response."""
    if response.result == "OK":
        return
    detail = " ".join(_text(line) for line in response.lines)
    lowered = detail.lower()
    if any(marker in lowered for marker in RATE_LIMIT_MARKERS):
        raise RateLimitError(f"IMAP {action} throttled: {detail}")
    raise UnknownSyncError(f"IMAP {action} failed: {response.result} {detail}")


def decode_header_value(value: Optional[str]) -> str:
    """Decode a MIME-encoded header into text."""
    if not value:
        return ""
    parts = []
    for content, charset in email.header.decode_header(value):
        if isinstance(content, bytes):
            try:
                parts.append(content.decode(charset or "utf-8", errors="replace"))
            except LookupError:
                parts.append(content.decode("utf-8", errors="replace"))
        else:
            parts.append(content)
    return "".join(parts).strip()


def _plain_text(msg: Message) -> str:
    for part in msg.walk():
        if part.get_content_type() == "text/plain" and not part.get_filename():
            payload = part.get_payload(decode=True) or b""
            charset = part.get_content_charset() or "utf-8"
            try:
                return payload.decode(charset, errors="replace")
            except LookupError:
                return payload.decode("utf-8", errors="replace")
    return ""


def _has_attachments(msg: Message) -> bool:
    return any(
        part.get_filename() or "attachment" in (part.get("Content-Disposition") or "").lower()
        for part in msg.walk()
        if not part.is_multipart()
    )


def parse_fetch_lines(lines: List[Any]) -> List[Dict[str, Any]]:
    """
    Group FETCH response lines into per-message records.

    aioimaplib hands literal payloads back as ``bytearray`` and protocol
    lines as ``bytes``; attribute lists may continue after the literal.
    """
    records: List[Dict[str, Any]] = []
    current: Optional[Dict[str, Any]] = None

    for line in lines:
        if isinstance(line, bytearray):
            if current is not None:
                current["raw"] = bytes(line)
            continue

        text = _text(line)
        start = FETCH_START.match(text)
        if start:
            current = {"seq": int(start.group("seq")), "flags": []}
            records.append(current)
        if current is None:
            continue

        uid = re.search(r"UID\s+(\d+)", text)
        if uid:
            current["uid"] = int(uid.group(1))
        flags = re.search(r"FLAGS\s+\(([^)]*)\)", text)
        if flags:
            current["flags"] = flags.group(1).split()
        size = re.search(r"RFC822\.SIZE\s+(\d+)", text)
        if size:
            current["size"] = int(size.group(1))

    return [record for record in records if "raw" in record]


def parse_imap_message(
    folder_id: str,
    uid_validity: int,
    record: Dict[str, Any]
) -> EmailMessage:
    """Map a FETCH record with its RFC 822 payload to the normalized message shape."""
    msg = email.message_from_bytes(record["raw"])
    flags = record.get("flags", [])
    uid = record.get("uid", record["seq"])

    from_name, from_address = email.utils.parseaddr(decode_header_value(msg.get("From")))
    sent_at = None
    if msg.get("Date"):
        try:
            sent_at = email.utils.parsedate_to_datetime(msg["Date"])
        except (TypeError, ValueError):
            logger.debug(f"Unparseable Date header: {msg['Date']}")

    message_id = (msg.get("Message-ID") or "").strip() or None
    return EmailMessage(
        provider_message_id=message_id or f"{folder_id}:{uid_validity}:{uid}",
        subject=decode_header_value(msg.get("Subject")),
        from_address=from_address,
        from_name=from_name,
        to_addresses=[
            {"address": a, "name": n}
            for n, a in email.utils.getaddresses([decode_header_value(msg.get("To"))]) if a
        ],
        cc_addresses=[
            {"address": a, "name": n}
            for n, a in email.utils.getaddresses([decode_header_value(msg.get("Cc"))]) if a
        ],
        sent_at=sent_at,
        received_at=sent_at,
        snippet=_plain_text(msg)[:200],
        is_read="\\Seen" in flags,
        is_starred="\\Flagged" in flags,
        has_attachments=_has_attachments(msg),
        folder_provider_id=folder_id,
        message_id_header=message_id,
        in_reply_to=(msg.get("In-Reply-To") or "").strip() or None,
        references=(msg.get("References") or "").split(),
        size_bytes=record.get("size", len(record["raw"])),
    )


def _default_client(credential: Credential, timeout: float):
    if credential.use_ssl:
        return aioimaplib.IMAP4_SSL(
            host=credential.host,
            port=credential.port or 993,
            ssl_context=ssl.create_default_context(),
            timeout=timeout,
        )
    return aioimaplib.IMAP4(host=credential.host, port=credential.port or 143, timeout=timeout)


@register_adapter(ProviderKind.IMAP)
class ImapAdapter(MailProviderAdapter):
    """
    Generic IMAP adapter using aioimaplib.

    Folders are selected read-only and fetched with BODY.PEEK so syncing
    never marks mail as read.
    """

    kind = ProviderKind.IMAP
    cursor_scope = CursorScope.NONE
    backs_off_on_rate_limit = True

    def __init__(self, settings=None, client_factory=None):
        super().__init__(settings)
        self._client_factory = client_factory or _default_client
        self._client = None

    async def _get_client(self, credential: Credential):
        if self._client is not None:
            return self._client
        if not credential.host:
            raise ConfigurationError("IMAP host is not configured")
        if not credential.username or not credential.password:
            raise ConfigurationError("IMAP username or password is not configured")

        client = self._client_factory(credential, self.settings.provider_timeout_seconds)
        try:
            await client.wait_hello_from_server()
            response = await client.login(credential.username, credential.password)
        except (OSError, asyncio.TimeoutError) as e:
            raise NetworkError(f"IMAP connection to {credential.host} failed: {e}")

        if response.result != "OK":
            detail = " ".join(_text(line) for line in response.lines)
            if any(marker in detail.lower() for marker in RATE_LIMIT_MARKERS):
                raise RateLimitError(f"IMAP login throttled: {detail}")
            raise PermissionDeniedError(f"IMAP login rejected: {detail}")

        logger.info(f"Connected to IMAP server: {credential.host}")
        self._client = client
        return client

    async def close(self):
        if self._client is None:
            return
        try:
            await self._client.logout()
        except Exception as e:
            logger.warning(f"Error during IMAP logout: {e}")
        finally:
            self._client = None

    async def _command(self, coro, action: str):
        try:
            response = await coro
        except (OSError, asyncio.TimeoutError) as e:
            raise NetworkError(f"IMAP {action} failed: {e}")
        _check(response, action)
        return response

    async def list_folders(
        self,
        account: Dict[str, Any],
        credential: Credential
    ) -> List[RemoteFolder]:
        client = await self._get_client(credential)
        response = await self._command(client.list('""', "*"), "LIST")

        folders: List[RemoteFolder] = []
        for line in response.lines:
            match = LIST_PATTERN.match(_text(line))
            if not match:
                continue
            flags = match.group("flags").split()
            if any(flag.lower() == "\\noselect" for flag in flags):
                continue
            name = match.group("name")
            delimiter = match.group("delimiter") or "/"
            parent = name.rsplit(delimiter, 1)[0] if delimiter in name else None

            messages, unseen = await self._status(client, name)
            folders.append(RemoteFolder(
                provider_folder_id=name,
                display_name=name,
                item_count=messages,
                unread_count=unseen,
                parent_id=parent,
                path=name.replace(delimiter, "/"),
                delimiter=delimiter,
                flags=flags,
            ))

        logger.info(f"Enumerated {len(folders)} IMAP folders for account {account['_id']}")
        return folders

    async def _status(self, client, name: str) -> Tuple[int, int]:
        response = await self._command(client.status(_quote(name), "(MESSAGES UNSEEN)"), "STATUS")
        text = " ".join(_text(line) for line in response.lines)
        messages = re.search(r"MESSAGES\s+(\d+)", text)
        unseen = re.search(r"UNSEEN\s+(\d+)", text)
        return (
            int(messages.group(1)) if messages else 0,
            int(unseen.group(1)) if unseen else 0,
        )

    async def _select(self, client, name: str) -> Tuple[int, int]:
        response = await self._command(client.examine(_quote(name)), "EXAMINE")
        exists, uid_validity = 0, 0
        for line in response.lines:
            text = _text(line)
            found = re.search(r"(\d+)\s+EXISTS", text)
            if found:
                exists = int(found.group(1))
            found = re.search(r"UIDVALIDITY\s+(\d+)", text)
            if found:
                uid_validity = int(found.group(1))
        return exists, uid_validity

    async def sync_folder(
        self,
        account: Dict[str, Any],
        folder: Optional[Dict[str, Any]],
        credential: Credential,
        context: SyncContext,
        page_marker: Optional[str] = None
    ) -> FolderPage:
        client = await self._get_client(credential)
        folder_id = folder["provider_folder_id"]
        exists, uid_validity = await self._select(client, folder_id)
        if exists == 0:
            return FolderPage()

        if page_marker:
            start = int(page_marker)
        elif context.full_sweep:
            start = 1
        else:
            start = max(1, exists - self.settings.imap_recent_window + 1)
        if start > exists:
            return FolderPage()
        end = min(exists, start + self.settings.imap_batch_size - 1)

        response = await self._command(client.fetch(f"{start}:{end}", FETCH_ITEMS), "FETCH")
        messages = []
        for record in parse_fetch_lines(response.lines):
            try:
                messages.append(parse_imap_message(folder_id, uid_validity, record))
            except (ValueError, LookupError, UnicodeError) as e:
                logger.warning(f"Skipping unparseable message {record.get('uid')} in {folder_id}: {e}")

        return FolderPage(
            messages=messages,
            new_cursor=None,
            next_page_marker=str(end + 1) if end < exists else None,
        )
