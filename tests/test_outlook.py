"""
Tests for the Outlook (Microsoft Graph) provider using httpx.MockTransport.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from mailboard.errors import AuthenticationFailure, ProviderError
from api.mail.providers.base import BulkActionRequest, ProviderType, SearchRequest
from api.mail.providers.outlook import OutlookProvider


def graph_message(index, **overrides):
    msg = {
        'id': f'AAMk-{index}',
        'conversationId': f'conv-{index}',
        'subject': f'Invoice {index}',
        'bodyPreview': f'  Please   find attached\r\ninvoice {index} ',
        'receivedDateTime': f'2024-03-0{index}T10:00:00Z',
        'isRead': index % 2 == 0,
        'hasAttachments': True,
        'importance': 'high',
        'from': {'emailAddress': {'name': 'Billing', 'address': 'billing@vendor.com'}},
        'toRecipients': [{'emailAddress': {'name': 'Me', 'address': 'me@example.com'}}],
        'ccRecipients': [],
    }
    msg.update(overrides)
    return msg


class FakeMsalApp:
    def __init__(self, result=None):
        self.result = result or {
            'access_token': 'fresh-access',
            'refresh_token': 'fresh-refresh',
            'expires_in': 3600,
        }
        self.calls = []

    def acquire_token_by_refresh_token(self, refresh_token, scopes):
        self.calls.append(refresh_token)
        return self.result


class GraphRecorder:
    """MockTransport handler that records requests and replays scripted responses."""

    def __init__(self, responder):
        self.responder = responder
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


@pytest.fixture
def account(storage, token_manager):
    account = storage.add_account("user-1", ProviderType.OUTLOOK, "Work", "me@example.com")
    token_manager.store_token(
        account.id, "valid-access", "valid-refresh",
        datetime.now(timezone.utc) + timedelta(hours=1)
    )
    return account


def make_provider(token_manager, responder, msal_app=None):
    recorder = GraphRecorder(responder)
    provider = OutlookProvider(
        token_manager,
        client_id="client",
        client_secret="secret",
        transport=httpx.MockTransport(recorder),
        msal_app=msal_app or FakeMsalApp()
    )
    return provider, recorder


class TestOutlookMessages:

    @pytest.mark.asyncio
    async def test_list_messages_normalizes(self, token_manager, account):
        def responder(request):
            return httpx.Response(200, json={'value': [graph_message(1), graph_message(2)]})

        provider, recorder = make_provider(token_manager, responder)
        messages = await provider.list_messages(account.id, "inbox", 10)

        request = recorder.requests[0]
        assert request.url.path == "/v1.0/me/mailFolders/inbox/messages"
        assert request.url.params['$top'] == '10'
        assert request.url.params['$orderby'] == 'receivedDateTime desc'
        assert request.headers['Authorization'] == 'Bearer valid-access'

        first = messages[0]
        assert first.provider == ProviderType.OUTLOOK
        assert first.account_id == account.id
        assert first.from_address.email == 'billing@vendor.com'
        assert first.from_address.name == 'Billing'
        assert first.preview == 'Please find attached invoice 1'
        assert first.importance == 'high'
        assert first.has_attachments is True
        assert first.is_read is False
        assert first.conversation_id == 'conv-1'
        assert first.received_at == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_logical_folders_map_to_well_known_names(self, token_manager, account):
        provider, recorder = make_provider(token_manager, lambda r: httpx.Response(200, json={'value': []}))

        await provider.list_messages(account.id, "junk")
        await provider.list_messages(account.id, "trash")
        await provider.list_messages(account.id, "sent")

        paths = [r.url.path for r in recorder.requests]
        assert paths == [
            "/v1.0/me/mailFolders/junkemail/messages",
            "/v1.0/me/mailFolders/deleteditems/messages",
            "/v1.0/me/mailFolders/sentitems/messages",
        ]

    @pytest.mark.asyncio
    async def test_search_uses_count_and_consistency_header(self, token_manager, account):
        def responder(request):
            return httpx.Response(200, json={'@odata.count': 42, 'value': [graph_message(3)]})

        provider, recorder = make_provider(token_manager, responder)
        result = await provider.search_messages(SearchRequest(account.id, 'invoice', max_results=5))

        request = recorder.requests[0]
        assert request.url.path == "/v1.0/me/messages"
        assert request.url.params['$search'] == '"invoice"'
        assert request.headers['ConsistencyLevel'] == 'eventual'
        assert result.total_count == 42
        assert len(result.messages) == 1

    @pytest.mark.asyncio
    async def test_folder_counts(self, token_manager, account):
        def responder(request):
            return httpx.Response(200, json={'unreadItemCount': 4, 'totalItemCount': 17})

        provider, _ = make_provider(token_manager, responder)
        assert await provider.get_folder_counts(account.id) == (4, 17)

    @pytest.mark.asyncio
    async def test_list_folders_types(self, token_manager, account):
        def responder(request):
            return httpx.Response(200, json={'value': [
                {'id': 'f1', 'displayName': 'Inbox', 'unreadItemCount': 2, 'totalItemCount': 9},
                {'id': 'f2', 'displayName': 'Junk Email', 'unreadItemCount': 0, 'totalItemCount': 1},
                {'id': 'f3', 'displayName': 'Receipts', 'unreadItemCount': 0, 'totalItemCount': 3},
            ]})

        provider, _ = make_provider(token_manager, responder)
        folders = await provider.list_folders(account.id)

        assert [f.type.value if f.type else None for f in folders] == ['inbox', 'junk', None]
        assert folders[0].unread_count == 2


class TestOutlookAuthentication:

    @pytest.mark.asyncio
    async def test_missing_credentials(self, storage, token_manager):
        account = storage.add_account("user-1", ProviderType.OUTLOOK, "Work", "x@example.com")
        provider, _ = make_provider(token_manager, lambda r: httpx.Response(200, json={}))

        with pytest.raises(AuthenticationFailure):
            await provider.list_messages(account.id)

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_before_call(self, storage, token_manager):
        account = storage.add_account("user-1", ProviderType.OUTLOOK, "Work", "x@example.com")
        token_manager.store_token(account.id, "stale", "the-refresh", datetime.now(timezone.utc) - timedelta(minutes=1))
        msal_app = FakeMsalApp()

        provider, recorder = make_provider(
            token_manager, lambda r: httpx.Response(200, json={'value': []}), msal_app
        )
        await provider.list_messages(account.id)

        assert msal_app.calls == ["the-refresh"]
        assert recorder.requests[0].headers['Authorization'] == 'Bearer fresh-access'
        stored = token_manager.get_token(account.id)
        assert stored.access_token == 'fresh-access'
        assert stored.refresh_token == 'fresh-refresh'

    @pytest.mark.asyncio
    async def test_401_refreshes_once_and_retries(self, token_manager, account):
        def responder(request):
            if request.headers['Authorization'] == 'Bearer valid-access':
                return httpx.Response(401, json={'error': {'message': 'InvalidAuthenticationToken'}})
            return httpx.Response(200, json={'value': [graph_message(1)]})

        msal_app = FakeMsalApp()
        provider, recorder = make_provider(token_manager, responder, msal_app)
        messages = await provider.list_messages(account.id)

        assert len(messages) == 1
        assert len(recorder.requests) == 2
        assert len(msal_app.calls) == 1

    @pytest.mark.asyncio
    async def test_second_401_is_provider_error(self, token_manager, account):
        msal_app = FakeMsalApp()
        provider, recorder = make_provider(
            token_manager, lambda r: httpx.Response(401, json={'error': {'message': 'nope'}}), msal_app
        )

        with pytest.raises(ProviderError):
            await provider.list_messages(account.id)
        assert len(recorder.requests) == 2
        assert len(msal_app.calls) == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_is_authentication_failure(self, token_manager, account):
        msal_app = FakeMsalApp({'error': 'invalid_grant', 'error_description': 'AADSTS70000'})
        provider, _ = make_provider(
            token_manager, lambda r: httpx.Response(401, json={}), msal_app
        )

        with pytest.raises(AuthenticationFailure) as exc_info:
            await provider.list_messages(account.id)
        assert 'AADSTS70000' in exc_info.value.message

    @pytest.mark.asyncio
    async def test_server_error_is_provider_error(self, token_manager, account):
        provider, _ = make_provider(
            token_manager, lambda r: httpx.Response(503, json={'error': {'message': 'Service unavailable'}})
        )

        with pytest.raises(ProviderError) as exc_info:
            await provider.list_messages(account.id)
        assert exc_info.value.provider == 'outlook'
        assert '503' in exc_info.value.message

    @pytest.mark.asyncio
    async def test_network_error_is_provider_error(self, token_manager, account):
        def responder(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider, _ = make_provider(token_manager, responder)

        with pytest.raises(ProviderError):
            await provider.list_messages(account.id)


class TestOutlookBulkActions:

    @pytest.mark.asyncio
    async def test_mark_read_patches_each_message(self, token_manager, account):
        provider, recorder = make_provider(token_manager, lambda r: httpx.Response(200, json={}))

        result = await provider.perform_bulk_action(BulkActionRequest(account.id, ['m1', 'm2'], 'markRead'))

        assert (result.processed_count, result.failed_count) == (2, 0)
        assert [r.method for r in recorder.requests] == ['PATCH', 'PATCH']
        assert json.loads(recorder.requests[0].content) == {'isRead': True}

    @pytest.mark.asyncio
    async def test_move_to_junk_posts_move(self, token_manager, account):
        provider, recorder = make_provider(token_manager, lambda r: httpx.Response(201, json={'id': 'new'}))

        await provider.perform_bulk_action(BulkActionRequest(account.id, ['m1'], 'moveToJunk'))

        request = recorder.requests[0]
        assert request.method == 'POST'
        assert request.url.path == '/v1.0/me/messages/m1/move'
        assert json.loads(request.content) == {'destinationId': 'junkemail'}

    @pytest.mark.asyncio
    async def test_delete_partial_failure(self, token_manager, account):
        def responder(request):
            if request.url.path.endswith('/missing'):
                return httpx.Response(404, json={'error': {'message': 'ErrorItemNotFound'}})
            return httpx.Response(204)

        provider, _ = make_provider(token_manager, responder)
        result = await provider.perform_bulk_action(
            BulkActionRequest(account.id, ['m1', 'missing', 'm3'], 'delete')
        )

        assert result.success is True
        assert (result.processed_count, result.failed_count) == (2, 1)
        assert 'ErrorItemNotFound' in result.error

    @pytest.mark.asyncio
    async def test_empty_folder_deletes_pages(self, token_manager, account):
        pages = [[{'id': 'a'}, {'id': 'b'}], []]

        def responder(request):
            if request.method == 'GET':
                return httpx.Response(200, json={'value': pages.pop(0)})
            return httpx.Response(204)

        provider, recorder = make_provider(token_manager, responder)
        deleted = await provider.empty_folder(account.id, 'trash')

        assert deleted == 2
        assert recorder.requests[0].url.path == '/v1.0/me/mailFolders/deleteditems/messages'
