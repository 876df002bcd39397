"""
Unit tests for the Gmail adapter, using an in-memory Gmail service.
"""

from datetime import datetime, timezone

import httplib2
import pytest

from mailsync.providers.email.base import (
    NetworkError,
    PermissionDeniedError,
    RateLimitError,
    SyncContext,
    SyncMode,
    SyncTrigger,
    UnknownSyncError,
)
from mailsync.providers.email.gmail_sync import (
    GmailAdapter,
    parse_gmail_message,
    translate_gmail_error,
)
from mailsync.tests.conftest import FakeGmailService, gmail_message, http_error

LABELS = [
    {"id": "INBOX", "name": "INBOX", "type": "system"},
    {"id": "SENT", "name": "SENT", "type": "system"},
    {"id": "UNREAD", "name": "UNREAD", "type": "system"},
    {"id": "CATEGORY_SOCIAL", "name": "CATEGORY_SOCIAL", "type": "system"},
    {"id": "Label_1", "name": "Clients", "type": "user"},
    {"id": "Label_2", "name": "Clients/Acme", "type": "user"},
]


def _service():
    messages = [
        gmail_message("g1", "Welcome", ["INBOX", "UNREAD"]),
        gmail_message("g2", "Re: Welcome", ["SENT"]),
        gmail_message("g3", "Invoice", ["INBOX", "Label_1", "STARRED"]),
    ]
    return FakeGmailService(LABELS, messages)


def _adapter(settings, service):
    return GmailAdapter(settings, service_factory=lambda credential: service)


class TestParseGmailMessage:
    """Tests for Gmail message mapping."""

    def test_maps_fields(self):
        message = parse_gmail_message(gmail_message("g1", "Hello", ["INBOX", "UNREAD", "STARRED"]))

        assert message.provider_message_id == "g1"
        assert message.subject == "Hello"
        assert message.from_address == "bob@example.com"
        assert message.from_name == "Bob"
        assert message.is_read is False
        assert message.is_starred is True
        assert message.folder_provider_id is None
        assert message.label_ids == ["INBOX", "UNREAD", "STARRED"]
        assert message.provider_thread_id == "thread-g1"
        assert message.received_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        assert message.size_bytes == 2048


class TestTranslateGmailError:
    """Tests for googleapiclient error translation."""

    def test_forbidden(self):
        error = translate_gmail_error(http_error(403, b'{"error": {"message": "Insufficient Permission"}}'))

        assert isinstance(error, PermissionDeniedError)

    def test_quota_403_is_rate_limit(self):
        error = translate_gmail_error(http_error(403, b'{"error": {"errors": [{"reason": "userRateLimitExceeded"}]}}'))

        assert isinstance(error, RateLimitError)

    def test_429_with_retry_after(self):
        error = translate_gmail_error(http_error(429, headers={"retry-after": "20"}))

        assert isinstance(error, RateLimitError)
        assert error.retry_after == 20

    def test_server_error(self):
        error = translate_gmail_error(http_error(500))

        assert isinstance(error, UnknownSyncError)
        assert error.status_code == 500

    def test_transport_errors(self):
        assert isinstance(translate_gmail_error(httplib2.ServerNotFoundError("dns")), NetworkError)
        assert isinstance(translate_gmail_error(OSError("reset")), NetworkError)


class TestGmailAdapter:
    """Tests for label listing and page-token sweeps."""

    @pytest.mark.asyncio
    async def test_list_folders_skips_attribute_labels(self, settings, oauth_credential):
        adapter = _adapter(settings, _service())

        folders = await adapter.list_folders({"_id": "acct-1"}, oauth_credential)

        ids = [f.provider_folder_id for f in folders]
        assert ids == ["INBOX", "SENT", "Label_1", "Label_2"]
        inbox = folders[0]
        assert inbox.item_count == 2
        assert inbox.unread_count == 1
        assert folders[3].parent_id == "Label_1"

    @pytest.mark.asyncio
    async def test_pages_until_token_exhausted(self, settings, oauth_credential):
        service = _service()
        adapter = _adapter(settings, service)
        context = SyncContext(account_id="acct-1", lease="l", mode=SyncMode.INITIAL)

        first = await adapter.sync_folder({}, None, oauth_credential, context)
        second = await adapter.sync_folder({}, None, oauth_credential, context, page_marker=first.next_page_marker)

        assert [m.provider_message_id for m in first.messages] == ["g1", "g2"]
        assert first.next_page_marker == "2"
        assert [m.provider_message_id for m in second.messages] == ["g3"]
        assert second.has_more is False
        assert second.new_cursor is None
        assert service.list_calls[0]["q"] is None

    @pytest.mark.asyncio
    async def test_resumes_from_account_cursor(self, settings, oauth_credential):
        service = _service()
        adapter = _adapter(settings, service)
        context = SyncContext(account_id="acct-1", lease="l", mode=SyncMode.INITIAL)

        page = await adapter.sync_folder({"sync_cursor": "2"}, None, oauth_credential, context)

        assert [m.provider_message_id for m in page.messages] == ["g3"]
        assert service.list_calls[0]["pageToken"] == "2"

    @pytest.mark.asyncio
    async def test_rejected_account_cursor_restarts_sweep(self, settings, oauth_credential):
        service = _service()
        adapter = _adapter(settings, service)
        context = SyncContext(account_id="acct-1", lease="l", mode=SyncMode.INCREMENTAL)

        page = await adapter.sync_folder({"sync_cursor": "expired-token"}, None, oauth_credential, context)

        assert [c["pageToken"] for c in service.list_calls] == ["expired-token", None]
        assert [m.provider_message_id for m in page.messages] == ["g1", "g2"]
        assert page.next_page_marker == "2"

    @pytest.mark.asyncio
    async def test_rejected_in_run_token_raises(self, settings, oauth_credential):
        service = _service()
        adapter = _adapter(settings, service)
        context = SyncContext(account_id="acct-1", lease="l")

        with pytest.raises(UnknownSyncError):
            await adapter.sync_folder({}, None, oauth_credential, context, page_marker="bogus")

        assert len(service.list_calls) == 1

    @pytest.mark.asyncio
    async def test_incremental_query_bounded_by_last_success(self, settings, oauth_credential):
        service = _service()
        adapter = _adapter(settings, service)
        account = {"last_successful_sync_at": datetime(2024, 5, 2, 0, 0, tzinfo=timezone.utc)}
        context = SyncContext(
            account_id="acct-1", lease="l", mode=SyncMode.INCREMENTAL, trigger=SyncTrigger.SCHEDULED
        )

        await adapter.sync_folder(account, None, oauth_credential, context)

        expected = int(datetime(2024, 5, 1, 0, 0, tzinfo=timezone.utc).timestamp())
        assert service.list_calls[0]["q"] == f"after:{expected}"

    @pytest.mark.asyncio
    async def test_vanished_message_skipped(self, settings, oauth_credential):
        service = _service()
        service.missing_ids.add("g2")
        adapter = _adapter(settings, service)
        context = SyncContext(account_id="acct-1", lease="l", mode=SyncMode.INITIAL)

        page = await adapter.sync_folder({}, None, oauth_credential, context)

        assert [m.provider_message_id for m in page.messages] == ["g1"]

    @pytest.mark.asyncio
    async def test_list_failure_translated(self, settings, oauth_credential):
        service = _service()
        service.list_error = http_error(401, b'{"error": {"message": "Invalid Credentials"}}')
        adapter = _adapter(settings, service)
        context = SyncContext(account_id="acct-1", lease="l")

        with pytest.raises(PermissionDeniedError):
            await adapter.sync_folder({}, None, oauth_credential, context)
