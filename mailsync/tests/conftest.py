"""
Mail Sync Test Configuration.

In-memory stand-ins for MongoDB collections and the three provider APIs,
so the real stores, adapters and worker can be exercised without servers.
"""

import copy
from collections import namedtuple
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import httplib2
import httpx
import pytest
from bson import ObjectId
from googleapiclient.errors import HttpError
from pymongo.errors import DuplicateKeyError

from mailsync.core.config import SyncSettings
from mailsync.core.store import AccountStore, FolderStore, MessageStore
from mailsync.providers.email.base import Credential
from mailsync.workers.scheduler import JobScheduler, SchedulingError

GRAPH_URL = "https://graph.test/v1.0"


# ==================== MongoDB ====================

def _compare(value, op: str, operand) -> bool:
    if op == "$ne":
        return value != operand
    if value is None:
        return False
    if op == "$lt":
        return value < operand
    if op == "$lte":
        return value <= operand
    if op == "$gt":
        return value > operand
    raise NotImplementedError(op)


def matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    """Subset of MongoDB query semantics used by the stores."""
    for key, condition in query.items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
            continue
        value = doc.get(key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            if not all(_compare(value, op, operand) for op, operand in condition.items()):
                return False
        elif isinstance(value, list) and not isinstance(condition, list):
            if condition not in value:
                return False
        elif value != condition:
            return False
    return True


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self.docs = docs

    def sort(self, key: str, direction: int = 1):
        self.docs.sort(key=lambda d: d.get(key, 0), reverse=direction < 0)
        return self

    async def to_list(self, length=None):
        return self.docs if length is None else self.docs[:length]


class FakeCollection:
    """Motor-compatible collection backed by a list, honoring unique indexes."""

    def __init__(self, unique: Optional[List[tuple]] = None):
        self.docs: List[Dict[str, Any]] = []
        self.unique = unique or []

    def _check_unique(self, candidate: Dict[str, Any]):
        for fields in self.unique:
            for doc in self.docs:
                if doc is not candidate and all(doc.get(f) == candidate.get(f) for f in fields):
                    raise DuplicateKeyError(f"duplicate key on {fields}")

    def _insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc.setdefault("_id", ObjectId())
        self._check_unique(doc)
        self.docs.append(doc)
        return doc

    def _upsert_doc(self, query: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        doc = {k: v for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
        doc.update(copy.deepcopy(update.get("$setOnInsert", {})))
        doc.update(copy.deepcopy(update.get("$set", {})))
        return self._insert(doc)

    @staticmethod
    def _apply(doc: Dict[str, Any], update: Dict[str, Any]) -> bool:
        changed = False
        for key, value in update.get("$set", {}).items():
            if doc.get(key, object()) != value:
                doc[key] = copy.deepcopy(value)
                changed = True
        return changed

    def _first(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return next((doc for doc in self.docs if matches(doc, query)), None)

    async def insert_one(self, doc: Dict[str, Any]):
        inserted = self._insert(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=inserted["_id"])

    async def find_one(self, query: Dict[str, Any], projection=None):
        doc = self._first(query)
        return copy.deepcopy(doc) if doc else None

    def find(self, query: Dict[str, Any], projection=None) -> FakeCursor:
        return FakeCursor([copy.deepcopy(d) for d in self.docs if matches(d, query)])

    async def find_one_and_update(self, query, update, upsert=False, return_document=None):
        doc = self._first(query)
        if doc is None:
            if not upsert:
                return None
            return copy.deepcopy(self._upsert_doc(query, update))
        self._apply(doc, update)
        return copy.deepcopy(doc)

    async def update_one(self, query, update, upsert=False):
        doc = self._first(query)
        if doc is None:
            if not upsert:
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
            inserted = self._upsert_doc(query, update)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=inserted["_id"])
        changed = self._apply(doc, update)
        return SimpleNamespace(matched_count=1, modified_count=int(changed), upserted_id=None)

    async def count_documents(self, query: Dict[str, Any]) -> int:
        return sum(1 for doc in self.docs if matches(doc, query))

    async def create_index(self, keys, **kwargs):
        return kwargs.get("name", "index")


def make_fake_db():
    accounts = FakeCollection()
    folders = FakeCollection(unique=[("account_id", "provider_folder_id")])
    messages = FakeCollection(unique=[("account_id", "provider_message_id")])
    return SimpleNamespace(
        accounts=AccountStore(accounts),
        folders=FolderStore(folders),
        messages=MessageStore(messages),
        accounts_collection=accounts,
        folders_collection=folders,
        messages_collection=messages,
    )


# ==================== Scheduler ====================

class FakeScheduler(JobScheduler):
    """Records scheduled jobs instead of running them."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.scheduled: List[Dict[str, Any]] = []

    async def schedule(self, job_name, payload, delay_seconds=0):
        if self.fail:
            raise SchedulingError("job queue unavailable")
        run_id = f"run-{len(self.scheduled) + 1}"
        self.scheduled.append({
            "job_name": job_name,
            "payload": dict(payload),
            "delay_seconds": delay_seconds,
            "run_id": run_id,
        })
        return run_id


# ==================== Microsoft Graph ====================

def graph_message(message_id: str, subject: str, sender: str = "alice@example.com", **extra):
    msg = {
        "id": message_id,
        "subject": subject,
        "from": {"emailAddress": {"address": sender, "name": "Alice"}},
        "toRecipients": [{"emailAddress": {"address": "me@example.com", "name": "Me"}}],
        "receivedDateTime": "2024-05-01T10:00:00Z",
        "sentDateTime": "2024-05-01T09:59:00Z",
        "isRead": False,
        "flag": {"flagStatus": "notFlagged"},
        "hasAttachments": False,
        "bodyPreview": f"Body of {subject}",
        "conversationId": f"conv-{message_id}",
        "internetMessageId": f"<{message_id}@example.com>",
    }
    msg.update(extra)
    return msg


class FakeGraph:
    """
    Mailbox served through ``httpx.MockTransport``.

    Delta rounds are paged ``page_size`` at a time; the last page of a round
    carries a delta link. Requests whose URL contains an entry of
    ``fail_once`` raise a connection error once.
    """

    def __init__(self, folders: List[Dict[str, Any]], messages: Dict[str, List[Dict[str, Any]]], page_size: int = 2):
        self.folders = folders
        self.messages = messages
        self.page_size = page_size
        self.fail_once: List[str] = []
        self.requests: List[str] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def _page(self, folder_id: str, skip: int) -> Dict[str, Any]:
        items = self.messages.get(folder_id, [])
        body: Dict[str, Any] = {"value": items[skip:skip + self.page_size]}
        if skip + self.page_size < len(items):
            body["@odata.nextLink"] = f"{GRAPH_URL}/page?folder={folder_id}&skip={skip + self.page_size}"
        else:
            body["@odata.deltaLink"] = f"{GRAPH_URL}/delta?folder={folder_id}&seen={len(items)}"
        return body

    def handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        for marker in list(self.fail_once):
            if marker in url:
                self.fail_once.remove(marker)
                raise httpx.ConnectError("connection reset", request=request)

        path = request.url.path
        params = request.url.params
        if path == "/v1.0/me/mailFolders":
            return httpx.Response(200, json={"value": self.folders})
        if path.endswith("/childFolders"):
            return httpx.Response(200, json={"value": []})
        if path.endswith("/messages/delta"):
            folder_id = path.split("/")[-3]
            return httpx.Response(200, json=self._page(folder_id, 0))
        if path == "/v1.0/page":
            return httpx.Response(200, json=self._page(params["folder"], int(params["skip"])))
        if path == "/v1.0/delta":
            folder_id = params["folder"]
            seen = int(params["seen"])
            items = self.messages.get(folder_id, [])
            return httpx.Response(200, json={
                "value": items[seen:],
                "@odata.deltaLink": f"{GRAPH_URL}/delta?folder={folder_id}&seen={len(items)}",
            })
        return httpx.Response(404, json={"error": {"message": f"no route for {path}"}})


# ==================== Gmail ====================

def gmail_message(message_id: str, subject: str, labels: List[str], sender: str = "Bob <bob@example.com>"):
    return {
        "id": message_id,
        "threadId": f"thread-{message_id}",
        "labelIds": labels,
        "snippet": f"Snippet of {subject}",
        "internalDate": "1714557600000",
        "sizeEstimate": 2048,
        "payload": {
            "headers": [
                {"name": "From", "value": sender},
                {"name": "To", "value": "me@example.com"},
                {"name": "Subject", "value": subject},
                {"name": "Message-ID", "value": f"<{message_id}@mail.gmail.com>"},
            ],
            "parts": [],
        },
    }


def http_error(status: int, content: bytes = b"{}", headers: Optional[Dict[str, str]] = None) -> HttpError:
    resp = httplib2.Response({"status": status, **(headers or {})})
    return HttpError(resp, content)


class FakeRequest:
    def __init__(self, fn):
        self.fn = fn

    def execute(self):
        return self.fn()


class FakeGmailService:
    """Enough of ``users().labels()`` and ``users().messages()`` for the adapter."""

    def __init__(self, labels: List[Dict[str, Any]], messages: List[Dict[str, Any]]):
        self.label_data = labels
        self.message_data = messages
        self.list_calls: List[Dict[str, Any]] = []
        self.fail_once_on_token: Optional[str] = None
        self.list_error: Optional[Exception] = None
        self.missing_ids: set = set()

    def users(self):
        return self

    def labels(self):
        return FakeGmailLabels(self)

    def messages(self):
        return FakeGmailMessages(self)


class FakeGmailLabels:
    def __init__(self, service: FakeGmailService):
        self.service = service

    def list(self, userId):
        return FakeRequest(lambda: {"labels": list(self.service.label_data)})

    def get(self, userId, id):
        def run():
            tagged = [m for m in self.service.message_data if id in m["labelIds"]]
            return {
                "id": id,
                "messagesTotal": len(tagged),
                "messagesUnread": sum(1 for m in tagged if "UNREAD" in m["labelIds"]),
            }
        return FakeRequest(run)


class FakeGmailMessages:
    def __init__(self, service: FakeGmailService):
        self.service = service

    def list(self, userId, maxResults, includeSpamTrash, pageToken=None, q=None):
        service = self.service
        service.list_calls.append({"pageToken": pageToken, "q": q, "maxResults": maxResults})

        def run():
            if service.list_error is not None:
                raise service.list_error
            if pageToken is not None and pageToken == service.fail_once_on_token:
                service.fail_once_on_token = None
                raise OSError("connection reset by peer")
            if pageToken is not None and not pageToken.isdigit():
                raise http_error(400, b'{"error": {"message": "Invalid pageToken"}}')
            start = int(pageToken) if pageToken else 0
            chunk = service.message_data[start:start + maxResults]
            result: Dict[str, Any] = {"messages": [{"id": m["id"], "threadId": m["threadId"]} for m in chunk]}
            if start + maxResults < len(service.message_data):
                result["nextPageToken"] = str(start + maxResults)
            return result
        return FakeRequest(run)

    def get(self, userId, id, format):
        def run():
            if id in self.service.missing_ids:
                raise http_error(404, b'{"error": {"message": "Not Found"}}')
            for message in self.service.message_data:
                if message["id"] == id:
                    return copy.deepcopy(message)
            raise http_error(404, b'{"error": {"message": "Not Found"}}')
        return FakeRequest(run)


# ==================== IMAP ====================

ImapResponse = namedtuple("ImapResponse", "result lines")


def rfc822(message_id: str, subject: str, sender: str = "Carol <carol@example.com>") -> bytes:
    return (
        f"From: {sender}\r\n"
        f"To: me@example.com\r\n"
        f"Subject: {subject}\r\n"
        f"Date: Wed, 01 May 2024 10:00:00 +0000\r\n"
        f"Message-ID: <{message_id}@example.com>\r\n"
        f"Content-Type: text/plain; charset=utf-8\r\n"
        f"\r\n"
        f"Hello from {subject}\r\n"
    ).encode("utf-8")


class FakeImapClient:
    """Scripted aioimaplib client over a dict of mailbox -> raw messages."""

    def __init__(self, mailboxes: Dict[str, List[bytes]], flags: Optional[Dict[str, str]] = None):
        self.mailboxes = mailboxes
        self.flags = flags or {}
        self.login_response = ImapResponse("OK", [b"LOGIN completed"])
        self.fail_fetch_once: Optional[str] = None
        self.fetch_response: Optional[ImapResponse] = None
        self.fetches: List[tuple] = []
        self.logged_out = False
        self.selected: Optional[str] = None

    async def wait_hello_from_server(self):
        return None

    async def login(self, username, password):
        return self.login_response

    async def logout(self):
        self.logged_out = True
        return ImapResponse("OK", [b"LOGOUT completed"])

    async def list(self, reference, pattern):
        lines = [
            f'({self.flags.get(name, chr(92) + "HasNoChildren")}) "/" "{name}"'.encode()
            for name in self.mailboxes
        ]
        return ImapResponse("OK", lines + [b"LIST completed"])

    async def status(self, mailbox, items):
        name = mailbox.strip('"')
        count = len(self.mailboxes[name])
        return ImapResponse("OK", [f'"{name}" (MESSAGES {count} UNSEEN {count})'.encode(), b"STATUS completed"])

    async def examine(self, mailbox):
        self.selected = mailbox.strip('"')
        count = len(self.mailboxes[self.selected])
        return ImapResponse("OK", [
            f"{count} EXISTS".encode(),
            b"0 RECENT",
            b"OK [UIDVALIDITY 42] UIDs valid",
            b"[READ-ONLY] EXAMINE completed",
        ])

    async def fetch(self, message_set, items):
        self.fetches.append((self.selected, message_set))
        if self.fail_fetch_once == message_set:
            self.fail_fetch_once = None
            raise OSError("connection reset by peer")
        if self.fetch_response is not None:
            return self.fetch_response
        start, end = (int(part) for part in message_set.split(":"))
        lines: List[Any] = []
        for seq in range(start, end + 1):
            raw = self.mailboxes[self.selected][seq - 1]
            lines.append(f"{seq} FETCH (UID {seq} FLAGS (\\Seen) RFC822.SIZE {len(raw)} BODY[] {{{len(raw)}}}".encode())
            lines.append(bytearray(raw))
            lines.append(b")")
        lines.append(b"FETCH completed")
        return ImapResponse("OK", lines)


# ==================== Fixtures ====================

@pytest.fixture
def settings():
    """Settings with small pages so paging paths are exercised."""
    return SyncSettings(
        mongodb_database="test_mailsync",
        graph_base_url=GRAPH_URL,
        graph_page_size=2,
        gmail_page_size=2,
        imap_batch_size=2,
        imap_recent_window=3,
        progress_interval=10,
        google_client_id="google-client",
        google_client_secret="google-secret",
        microsoft_client_id="ms-client",
        microsoft_client_secret="ms-secret",
    )


@pytest.fixture
def fake_db():
    return make_fake_db()


@pytest.fixture
def fake_scheduler():
    return FakeScheduler()


@pytest.fixture
def oauth_credential():
    return Credential(access_token="access-token", expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def credential_gate(oauth_credential):
    gate = AsyncMock()
    gate.get_valid_credential = AsyncMock(return_value=oauth_credential)
    return gate


@pytest.fixture
def make_account(fake_db):
    """Insert an account document and return its id."""
    async def _make(provider: str = "microsoft", **fields) -> str:
        doc = {
            "user_id": "user-1",
            "provider": provider,
            "email": "me@example.com",
            "status": "active",
            "initial_sync_completed": False,
            "sync_lease": None,
            "sync_cursor": None,
        }
        doc.update(fields)
        result = await fake_db.accounts_collection.insert_one(doc)
        return str(result.inserted_id)
    return _make
