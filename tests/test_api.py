"""
Tests for the REST layer: auth middleware, status mapping and camelCase
bodies, using FastAPI's TestClient against fake adapters.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from mailboard.config import MailConfig
from mailboard.errors import AuthenticationFailure, ProviderError
from mailboard.user_auth import UserAuth
from api.auth_middleware import SESSION_COOKIE
from api.main import create_app
from api.mail.oauth import OAuthTokens, encode_state
from api.mail.providers.base import ProviderType

from conftest import make_message


class FakeOAuthClient:
    def __init__(self):
        self.exchanged = []
        self.error = None

    def authorization_url(self, provider, account_id, base_url):
        return f"https://auth.example.com/{provider.value}?state={encode_state(account_id)}"

    async def exchange_code(self, provider, code, base_url):
        self.exchanged.append((provider, code))
        if self.error:
            raise self.error
        return OAuthTokens(
            access_token="oauth-access",
            refresh_token="oauth-refresh",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1)
        )


@pytest.fixture
def user_auth(tmp_path):
    return UserAuth(str(tmp_path / "users.db"))


@pytest.fixture
def owner(user_auth):
    user_id = user_auth.create_user("owner@example.com", "correct horse")
    return {'id': user_id, 'token': user_auth.create_session(user_id)}


@pytest.fixture
def intruder(user_auth):
    user_id = user_auth.create_user("intruder@example.com", "battery staple")
    return {'id': user_id, 'token': user_auth.create_session(user_id)}


@pytest.fixture
def oauth_client():
    return FakeOAuthClient()


@pytest.fixture
def client(service, user_auth, oauth_client):
    app = create_app(config=MailConfig(), service=service, user_auth=user_auth, oauth_client=oauth_client)
    return TestClient(app)


@pytest.fixture
def account(storage, owner):
    return storage.add_account(owner['id'], ProviderType.GMAIL, "Personal", "owner@gmail.com")


def auth(user):
    return {'Authorization': f"Bearer {user['token']}"}


class TestAuthentication:

    def test_health_is_public(self, client):
        assert client.get("/api/health").json() == {"status": "ok"}

    def test_missing_token(self, client, account):
        response = client.get("/api/mail/messages", params={'accountId': account.id})

        assert response.status_code == 401
        assert response.json()['error'] == 'Not authenticated'

    def test_invalid_token(self, client, account):
        response = client.get(
            "/api/mail/messages",
            params={'accountId': account.id},
            headers={'Authorization': 'Bearer not-a-session'}
        )

        assert response.status_code == 401

    def test_session_cookie(self, client, owner, account):
        client.cookies.set(SESSION_COOKIE, owner['token'])

        response = client.get("/api/mail/messages", params={'accountId': account.id})

        assert response.status_code == 200


class TestMessageRoutes:

    def test_list_messages(self, client, owner, account, gmail_provider):
        gmail_provider.messages = [make_message(i, account.id) for i in range(2)]

        response = client.get(
            "/api/mail/messages", params={'accountId': account.id, 'maxResults': 2}, headers=auth(owner)
        )

        assert response.status_code == 200
        body = response.json()
        assert body['hasMore'] is True
        assert body['messages'][0]['accountId'] == account.id
        assert body['messages'][0]['from']['email'] == 'sender0@example.com'
        assert 'receivedAt' in body['messages'][0]

    def test_missing_account_id(self, client, owner):
        response = client.get("/api/mail/messages", headers=auth(owner))

        assert response.status_code == 400
        assert response.json()['detail'] == 'Missing required parameters'

    def test_someone_elses_account(self, client, intruder, account, gmail_provider):
        response = client.get("/api/mail/messages", params={'accountId': account.id}, headers=auth(intruder))

        assert response.status_code == 404
        assert response.json()['code'] == 'access_denied'
        assert gmail_provider.calls == {}

    def test_rate_limited(self, client, owner, account):
        for _ in range(30):
            client.get("/api/mail/messages", params={'accountId': account.id}, headers=auth(owner))

        response = client.get("/api/mail/messages", params={'accountId': account.id}, headers=auth(owner))

        assert response.status_code == 429
        assert response.json()['code'] == 'rate_limited'
        assert int(response.headers['Retry-After']) >= 1

    def test_relink_required(self, client, owner, account, gmail_provider):
        gmail_provider.error = AuthenticationFailure("refresh token revoked")

        response = client.get("/api/mail/folders", params={'accountId': account.id}, headers=auth(owner))

        assert response.status_code == 403
        assert response.json() == {'error': 'refresh token revoked', 'code': 'relink_required'}

    def test_provider_failure(self, client, owner, account, gmail_provider):
        gmail_provider.error = ProviderError("Gmail API error 503")

        response = client.get("/api/mail/folders", params={'accountId': account.id}, headers=auth(owner))

        assert response.status_code == 500
        assert response.json()['code'] == 'provider_error'

    def test_search(self, client, owner, account, gmail_provider):
        gmail_provider.messages = [make_message(1, account.id), make_message(2, account.id)]

        response = client.post(
            "/api/mail/search",
            json={'accountId': account.id, 'query': 'subject 2', 'maxResults': 5},
            headers=auth(owner)
        )

        assert response.status_code == 200
        assert response.json()['totalCount'] == 1
        assert response.json()['messages'][0]['id'] == 'msg-2'

    def test_search_without_query(self, client, owner, account):
        response = client.post("/api/mail/search", json={'accountId': account.id}, headers=auth(owner))

        assert response.status_code == 400

    def test_bulk_action(self, client, owner, account, gmail_provider):
        gmail_provider.bad_ids = {'m2'}

        response = client.post(
            "/api/mail/bulk-action",
            json={'accountId': account.id, 'messageIds': ['m1', 'm2'], 'action': 'markRead'},
            headers=auth(owner)
        )

        body = response.json()
        assert response.status_code == 200
        assert body['success'] is True
        assert (body['processedCount'], body['failedCount']) == (1, 1)

    def test_bulk_action_empty_ids(self, client, owner, account):
        response = client.post(
            "/api/mail/bulk-action",
            json={'accountId': account.id, 'messageIds': [], 'action': 'delete'},
            headers=auth(owner)
        )

        assert response.status_code == 400

    def test_summary(self, client, owner, account, gmail_provider):
        gmail_provider.counts = (3, 12)

        response = client.get("/api/mail/summary", headers=auth(owner))

        assert response.status_code == 200
        body = response.json()
        assert body['totalUnread'] == 3
        assert body['accounts'][0]['accountId'] == account.id
        assert body['errors'] == []

    def test_empty_folder(self, client, owner, account):
        response = client.delete(
            "/api/mail/empty-folder", params={'accountId': account.id, 'folder': 'trash'}, headers=auth(owner)
        )

        assert response.json() == {'success': True, 'deletedCount': 3}

    def test_empty_inbox_refused(self, client, owner, account, gmail_provider):
        response = client.delete(
            "/api/mail/empty-folder", params={'accountId': account.id, 'folder': 'inbox'}, headers=auth(owner)
        )

        assert response.status_code == 400
        assert gmail_provider.calls == {}


class TestAccountRoutes:

    def test_create_gmail_account_returns_authorization_url(self, client, owner):
        response = client.post(
            "/api/mail/accounts",
            json={'provider': 'gmail', 'accountName': 'Personal', 'emailAddress': 'me@gmail.com'},
            headers=auth(owner)
        )

        assert response.status_code == 201
        body = response.json()
        assert body['account']['emailAddress'] == 'me@gmail.com'
        assert body['authorizationUrl'].startswith("https://auth.example.com/gmail")

    def test_create_imap_account_has_no_authorization_url(self, client, owner):
        response = client.post(
            "/api/mail/accounts",
            json={'provider': 'imap', 'accountName': 'Home', 'emailAddress': 'me@home.net'},
            headers=auth(owner)
        )

        assert response.status_code == 201
        assert 'authorizationUrl' not in response.json()

    def test_duplicate_account(self, client, owner, account):
        response = client.post(
            "/api/mail/accounts",
            json={'provider': 'gmail', 'accountName': 'Again', 'emailAddress': 'owner@gmail.com'},
            headers=auth(owner)
        )

        assert response.status_code == 409

    def test_unknown_provider_is_bad_request(self, client, owner):
        response = client.post(
            "/api/mail/accounts",
            json={'provider': 'aol', 'accountName': 'Old', 'emailAddress': 'me@aol.com'},
            headers=auth(owner)
        )

        assert response.status_code == 400

    def test_list_update_delete(self, client, owner, account):
        listed = client.get("/api/mail/accounts", headers=auth(owner)).json()
        assert [a['id'] for a in listed['accounts']] == [account.id]

        updated = client.put(
            f"/api/mail/accounts/{account.id}", json={'isEnabled': False}, headers=auth(owner)
        ).json()
        assert updated['account']['isEnabled'] is False

        assert client.delete(f"/api/mail/accounts/{account.id}", headers=auth(owner)).json() == {'success': True}
        assert client.get("/api/mail/accounts", headers=auth(owner)).json() == {'accounts': []}

    def test_store_credentials(self, client, owner, account, token_manager):
        response = client.post(
            f"/api/mail/accounts/{account.id}/credentials",
            json={'accessToken': 'app-password'},
            headers=auth(owner)
        )

        assert response.status_code == 200
        assert token_manager.get_token(account.id).access_token == 'app-password'


class TestOAuthCallback:

    def callback(self, client, user=None, **params):
        headers = auth(user) if user else {}
        return client.get("/api/mail/oauth/callback", params=params, headers=headers, follow_redirects=False)

    def test_anonymous_goes_to_login(self, client):
        response = self.callback(client, code='c', state='s', provider='gmail')

        assert response.status_code == 307
        assert response.headers['location'] == '/login?error=not_authenticated'

    def test_missing_parameters(self, client, owner):
        response = self.callback(client, owner, code='c')

        assert response.headers['location'] == '/mail/settings?error=missing_parameters'

    def test_invalid_provider(self, client, owner, account):
        response = self.callback(client, owner, code='c', state=encode_state(account.id), provider='imap')

        assert response.headers['location'] == '/mail/settings?error=invalid_provider'

    def test_invalid_state(self, client, owner):
        response = self.callback(client, owner, code='c', state='bm90LWpzb24=', provider='gmail')

        assert response.headers['location'] == '/mail/settings?error=invalid_state'

    def test_state_for_someone_elses_account(self, client, intruder, account):
        response = self.callback(client, intruder, code='c', state=encode_state(account.id), provider='gmail')

        assert response.headers['location'] == '/mail/settings?error=account_not_found'

    def test_success_stores_tokens(self, client, owner, account, oauth_client, token_manager):
        response = self.callback(client, owner, code='auth-code', state=encode_state(account.id), provider='gmail')

        assert response.headers['location'] == '/mail/settings?success=account_connected'
        assert oauth_client.exchanged == [(ProviderType.GMAIL, 'auth-code')]
        token = token_manager.get_token(account.id)
        assert (token.access_token, token.refresh_token) == ('oauth-access', 'oauth-refresh')

    def test_exchange_failure(self, client, owner, account, oauth_client, token_manager):
        oauth_client.error = ProviderError("token_exchange_failed", provider='gmail')

        response = self.callback(client, owner, code='bad', state=encode_state(account.id), provider='gmail')

        assert response.headers['location'] == '/mail/settings?error=provider_error'
        assert token_manager.get_token(account.id) is None
