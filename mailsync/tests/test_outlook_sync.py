"""
Unit tests for the Microsoft Graph adapter.

Graph is served by ``httpx.MockTransport`` through the FakeGraph helper.
"""

import httpx
import pytest

from mailsync.providers.email.base import (
    NetworkError,
    PermissionDeniedError,
    RateLimitError,
    SyncContext,
    SyncMode,
    UnknownSyncError,
)
from mailsync.providers.email.outlook_sync import (
    OutlookAdapter,
    parse_graph_message,
    raise_for_graph_status,
)
from mailsync.tests.conftest import GRAPH_URL, FakeGraph, graph_message


def _graph():
    folders = [
        {"id": "inbox-id", "displayName": "Inbox", "totalItemCount": 3, "unreadItemCount": 2, "childFolderCount": 0},
        {"id": "junk-id", "displayName": "Junk Email", "totalItemCount": 0, "unreadItemCount": 0, "childFolderCount": 0},
    ]
    messages = {
        "inbox-id": [graph_message(f"m{i}", f"Subject {i}") for i in range(1, 4)],
    }
    return FakeGraph(folders, messages)


def _context():
    return SyncContext(account_id="acct-1", lease="lease-1", mode=SyncMode.INITIAL)


class TestParseGraphMessage:
    """Tests for Graph message mapping."""

    def test_maps_fields(self):
        raw = graph_message("abc", "Quarterly report", flag={"flagStatus": "flagged"}, isRead=True)

        message = parse_graph_message("inbox-id", raw)

        assert message.provider_message_id == "abc"
        assert message.subject == "Quarterly report"
        assert message.from_address == "alice@example.com"
        assert message.to_addresses == [{"address": "me@example.com", "name": "Me"}]
        assert message.is_read is True
        assert message.is_starred is True
        assert message.folder_provider_id == "inbox-id"
        assert message.provider_thread_id == "conv-abc"
        assert message.received_at.tzinfo is not None

    def test_missing_subject(self):
        raw = graph_message("abc", None)

        assert parse_graph_message("inbox-id", raw).subject == ""


class TestGraphErrors:
    """Tests for Graph status translation."""

    def _response(self, status, headers=None):
        return httpx.Response(
            status,
            json={"error": {"code": "x", "message": "nope"}},
            headers=headers,
            request=httpx.Request("GET", GRAPH_URL),
        )

    @pytest.mark.parametrize("status", [401, 403])
    def test_permission(self, status):
        with pytest.raises(PermissionDeniedError):
            raise_for_graph_status(self._response(status))

    def test_throttled_with_retry_after(self):
        with pytest.raises(RateLimitError) as exc_info:
            raise_for_graph_status(self._response(429, {"Retry-After": "40"}))

        assert exc_info.value.retry_after == 40

    def test_unavailable_with_retry_after_is_rate_limit(self):
        with pytest.raises(RateLimitError):
            raise_for_graph_status(self._response(503, {"Retry-After": "5"}))

    def test_server_error(self):
        with pytest.raises(UnknownSyncError) as exc_info:
            raise_for_graph_status(self._response(500))

        assert exc_info.value.status_code == 500

    def test_success_passes(self):
        raise_for_graph_status(self._response(200))


class TestOutlookAdapter:
    """Tests for folder listing and delta paging."""

    @pytest.mark.asyncio
    async def test_list_folders(self, settings, oauth_credential):
        graph = _graph()
        adapter = OutlookAdapter(settings, transport=graph.transport())

        folders = await adapter.list_folders({"_id": "acct-1"}, oauth_credential)
        await adapter.close()

        assert [f.provider_folder_id for f in folders] == ["inbox-id", "junk-id"]
        assert folders[0].item_count == 3
        assert folders[0].unread_count == 2
        assert folders[0].path == "Inbox"

    @pytest.mark.asyncio
    async def test_child_folders_walked(self, settings, oauth_credential):
        def handler(request):
            path = request.url.path
            if path == "/v1.0/me/mailFolders":
                return httpx.Response(200, json={"value": [
                    {"id": "inbox-id", "displayName": "Inbox", "childFolderCount": 1},
                ]})
            if path == "/v1.0/me/mailFolders/inbox-id/childFolders":
                return httpx.Response(200, json={"value": [
                    {"id": "clients-id", "displayName": "Clients", "childFolderCount": 0},
                ]})
            return httpx.Response(404)

        adapter = OutlookAdapter(settings, transport=httpx.MockTransport(handler))
        folders = await adapter.list_folders({"_id": "acct-1"}, oauth_credential)
        await adapter.close()

        child = folders[1]
        assert child.provider_folder_id == "clients-id"
        assert child.parent_id == "inbox-id"
        assert child.path == "Inbox/Clients"

    def test_excluded_folders(self, settings):
        adapter = OutlookAdapter(settings)

        assert adapter.should_sync_folder({"raw_name": "Junk Email"}) is False
        assert adapter.should_sync_folder({"raw_name": "deleted items"}) is False
        assert adapter.should_sync_folder({"raw_name": "Inbox"}) is True

    @pytest.mark.asyncio
    async def test_initial_delta_pages(self, settings, oauth_credential):
        """Pages carry a next link until the last one, which carries the delta link."""
        graph = _graph()
        adapter = OutlookAdapter(settings, transport=graph.transport())
        folder = {"provider_folder_id": "inbox-id", "sync_cursor": None}

        first = await adapter.sync_folder({}, folder, oauth_credential, _context())
        second = await adapter.sync_folder(
            {}, folder, oauth_credential, _context(), page_marker=first.next_page_marker
        )
        await adapter.close()

        assert [m.provider_message_id for m in first.messages] == ["m1", "m2"]
        assert first.has_more is True
        assert first.new_cursor is None
        assert [m.provider_message_id for m in second.messages] == ["m3"]
        assert second.has_more is False
        assert second.new_cursor == f"{GRAPH_URL}/delta?folder=inbox-id&seen=3"
        assert "/me/mailFolders/inbox-id/messages/delta" in graph.requests[0]

    @pytest.mark.asyncio
    async def test_resume_from_delta_link(self, settings, oauth_credential):
        graph = _graph()
        graph.messages["inbox-id"].append(graph_message("m4", "Subject 4"))
        adapter = OutlookAdapter(settings, transport=graph.transport())
        folder = {
            "provider_folder_id": "inbox-id",
            "sync_cursor": f"{GRAPH_URL}/delta?folder=inbox-id&seen=3",
        }

        page = await adapter.sync_folder({}, folder, oauth_credential, _context())
        await adapter.close()

        assert [m.provider_message_id for m in page.messages] == ["m4"]
        assert page.new_cursor == f"{GRAPH_URL}/delta?folder=inbox-id&seen=4"

    @pytest.mark.asyncio
    async def test_removed_items_skipped(self, settings, oauth_credential):
        def handler(request):
            return httpx.Response(200, json={
                "value": [
                    graph_message("m1", "Kept"),
                    {"id": "m2", "@removed": {"reason": "deleted"}},
                ],
                "@odata.deltaLink": f"{GRAPH_URL}/delta?folder=inbox-id&seen=2",
            })

        adapter = OutlookAdapter(settings, transport=httpx.MockTransport(handler))
        page = await adapter.sync_folder(
            {}, {"provider_folder_id": "inbox-id"}, oauth_credential, _context()
        )
        await adapter.close()

        assert [m.provider_message_id for m in page.messages] == ["m1"]

    @pytest.mark.asyncio
    async def test_expired_delta_link_restarts(self, settings, oauth_credential):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            if request.url.path == "/v1.0/delta":
                return httpx.Response(410, json={"error": {"message": "sync state expired"}})
            return httpx.Response(200, json={
                "value": [graph_message("m1", "Again")],
                "@odata.deltaLink": f"{GRAPH_URL}/delta?folder=inbox-id&seen=1",
            })

        adapter = OutlookAdapter(settings, transport=httpx.MockTransport(handler))
        folder = {"provider_folder_id": "inbox-id", "sync_cursor": f"{GRAPH_URL}/delta?folder=inbox-id&seen=9"}
        page = await adapter.sync_folder({}, folder, oauth_credential, _context())
        await adapter.close()

        assert calls == ["/v1.0/delta", "/v1.0/me/mailFolders/inbox-id/messages/delta"]
        assert [m.provider_message_id for m in page.messages] == ["m1"]

    @pytest.mark.asyncio
    async def test_connection_error_is_network_error(self, settings, oauth_credential):
        graph = _graph()
        graph.fail_once.append("/messages/delta")
        adapter = OutlookAdapter(settings, transport=graph.transport())

        with pytest.raises(NetworkError):
            await adapter.sync_folder(
                {}, {"provider_folder_id": "inbox-id"}, oauth_credential, _context()
            )
        await adapter.close()

    @pytest.mark.asyncio
    async def test_bearer_token_sent(self, settings, oauth_credential):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["prefer"] = request.headers.get("Prefer")
            return httpx.Response(200, json={"value": []})

        adapter = OutlookAdapter(settings, transport=httpx.MockTransport(handler))
        await adapter.list_folders({"_id": "acct-1"}, oauth_credential)
        await adapter.close()

        assert seen["auth"] == "Bearer access-token"
        assert seen["prefer"] == "odata.maxpagesize=2"
