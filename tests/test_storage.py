"""
Tests for the account store and encrypted token handling.
"""

from datetime import datetime, timedelta, timezone

import pytest

from mailboard.crypto import TokenVault
from mailboard.errors import AuthenticationFailure
from api.mail.providers.base import ProviderType
from api.mail.storage import DuplicateAccountError
from api.mail.tokens import DecryptedToken, is_token_expired


class TestMailStorage:

    def test_add_and_get_account(self, storage):
        account = storage.add_account("user-1", ProviderType.GMAIL, "Personal", " Me@Example.com ")

        assert account.email_address == "me@example.com"
        assert account.is_enabled is True
        assert account.sync_frequency_minutes == 5
        assert storage.lookup_account(account.id) == account

    def test_duplicate_account_rejected(self, storage):
        storage.add_account("user-1", ProviderType.GMAIL, "A", "me@example.com")

        with pytest.raises(DuplicateAccountError):
            storage.add_account("user-1", ProviderType.GMAIL, "B", "ME@example.com")

    def test_same_address_different_provider_or_user_allowed(self, storage):
        storage.add_account("user-1", ProviderType.GMAIL, "A", "me@example.com")
        storage.add_account("user-1", ProviderType.IMAP, "B", "me@example.com")
        storage.add_account("user-2", ProviderType.GMAIL, "C", "me@example.com")

        assert len(storage.list_accounts("user-1")) == 2

    def test_sync_frequency_must_be_positive(self, storage):
        import sqlite3

        with pytest.raises(sqlite3.IntegrityError):
            storage.add_account("user-1", ProviderType.GMAIL, "A", "me@example.com", sync_frequency_minutes=0)

    def test_list_enabled_only(self, storage):
        a = storage.add_account("user-1", ProviderType.GMAIL, "A", "a@example.com")
        storage.add_account("user-1", ProviderType.OUTLOOK, "B", "b@example.com")
        storage.update_account(a.id, is_enabled=False)

        enabled = storage.list_accounts("user-1", enabled_only=True)
        assert [acc.account_name for acc in enabled] == ["B"]

    def test_update_ignores_unknown_fields(self, storage):
        account = storage.add_account("user-1", ProviderType.GMAIL, "A", "a@example.com")

        assert storage.update_account(account.id, account_name="Work", user_id="user-2") is True
        updated = storage.get_account(account.id)
        assert updated.account_name == "Work"
        assert updated.user_id == "user-1"

    def test_update_missing_account(self, storage):
        assert storage.update_account("nope", account_name="x") is False

    def test_delete_cascades_tokens(self, storage, token_manager):
        account = storage.add_account("user-1", ProviderType.GMAIL, "A", "a@example.com")
        token_manager.store_token(account.id, "access", "refresh")

        assert storage.delete_account(account.id) is True
        assert storage.get_account(account.id) is None
        assert storage.get_token_row(account.id) is None

    def test_to_dict_is_camel_case(self, storage):
        account = storage.add_account("user-1", ProviderType.IMAP, "A", "a@example.com")
        data = account.to_dict()

        assert data['provider'] == 'imap'
        assert data['emailAddress'] == 'a@example.com'
        assert data['syncFrequencyMinutes'] == 5


class TestTokenManager:

    @pytest.fixture
    def account(self, storage):
        return storage.add_account("user-1", ProviderType.OUTLOOK, "Work", "me@example.com")

    def test_store_and_get(self, token_manager, account):
        expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
        token_manager.store_token(account.id, "access-1", "refresh-1", expires)

        token = token_manager.get_token(account.id)
        assert token.access_token == "access-1"
        assert token.refresh_token == "refresh-1"
        assert token.expires_at == expires

    def test_ciphertext_not_plaintext(self, token_manager, storage, account):
        token_manager.store_token(account.id, "access-secret", "refresh-secret")
        row = storage.get_token_row(account.id)

        assert "access-secret" not in str(row)
        assert row['iv'] != row['refresh_token_iv']

    def test_imap_credentials_have_no_refresh_or_expiry(self, token_manager, account):
        token_manager.store_token(account.id, "app-password")

        token = token_manager.get_token(account.id)
        assert token.refresh_token is None
        assert token.expires_at is None

    def test_store_replaces_previous(self, token_manager, account):
        token_manager.store_token(account.id, "old", "refresh")
        token_manager.store_token(account.id, "new")

        assert token_manager.get_token(account.id).access_token == "new"

    def test_missing_token(self, token_manager):
        assert token_manager.get_token("unknown") is None

    def test_wrong_key_raises_authentication_failure(self, storage, token_manager, account):
        token_manager.store_token(account.id, "access")
        other = type(token_manager)(storage, TokenVault("e" * 64))

        with pytest.raises(AuthenticationFailure) as exc_info:
            other.get_token(account.id)
        assert exc_info.value.account_id == account.id

    def test_delete_token(self, token_manager, account):
        token_manager.store_token(account.id, "access")

        assert token_manager.delete_token(account.id) is True
        assert token_manager.get_token(account.id) is None

    def test_repr_hides_secrets(self):
        token = DecryptedToken(access_token="secret-access", refresh_token="secret-refresh")
        assert "secret" not in repr(token)


class TestTokenExpiry:

    def test_no_expiry_never_expires(self):
        assert is_token_expired(DecryptedToken("a")) is False

    def test_expiry_inside_buffer_counts_as_expired(self):
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

        assert is_token_expired(DecryptedToken("a", expires_at=now + timedelta(minutes=4)), now) is True
        assert is_token_expired(DecryptedToken("a", expires_at=now + timedelta(minutes=6)), now) is False

    def test_naive_expiry_treated_as_utc(self):
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        naive = datetime(2024, 1, 1, 11, 0)

        assert is_token_expired(DecryptedToken("a", expires_at=naive), now) is True
