"""
Token manager: encrypted storage and retrieval of OAuth tokens and IMAP credentials.

Adapters only ever see DecryptedToken values handed out by get_token(); the
ciphertext stays in storage.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from mailboard.crypto import TokenVault
from mailboard.errors import AuthenticationFailure

logger = logging.getLogger(__name__)

# Tokens expiring within this window are treated as already expired
EXPIRY_BUFFER = timedelta(minutes=5)


@dataclass
class DecryptedToken:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def __repr__(self) -> str:
        return f"DecryptedToken(expires_at={self.expires_at!r}, has_refresh={self.refresh_token is not None})"


def is_token_expired(token: DecryptedToken, now: Optional[datetime] = None) -> bool:
    """Check if a token is expired or about to expire. Tokens without an expiry (IMAP) never expire."""
    if token.expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    expires_at = token.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return now >= expires_at - EXPIRY_BUFFER


class TokenManager:
    """
    Credential collaborator for the provider adapters.
    """

    def __init__(self, storage, vault: TokenVault):
        """
        Args:
            storage: MailStorage holding the encrypted token rows
            vault: TokenVault used to encrypt/decrypt
        """
        self.storage = storage
        self.vault = vault

    def store_token(
        self,
        account_id: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None
    ) -> None:
        """Encrypt and store tokens. Access and refresh tokens each get their own IV and tag."""
        access = self.vault.encrypt(access_token)
        row = {
            'encrypted_access_token': access.ciphertext,
            'iv': access.iv,
            'auth_tag': access.auth_tag,
            'token_expires_at': expires_at.isoformat() if expires_at else None,
        }

        if refresh_token:
            refresh = self.vault.encrypt(refresh_token)
            row.update({
                'encrypted_refresh_token': refresh.ciphertext,
                'refresh_token_iv': refresh.iv,
                'refresh_token_auth_tag': refresh.auth_tag,
            })

        self.storage.save_token_row(account_id, row)
        logger.info(f"Stored credentials for account {account_id}")

    def get_token(self, account_id: str) -> Optional[DecryptedToken]:
        """
        Retrieve and decrypt tokens for an account.

        Returns None when the account has no stored credentials.

        Raises:
            AuthenticationFailure: stored ciphertext fails authentication
        """
        row = self.storage.get_token_row(account_id)
        if not row:
            return None

        try:
            access_token = self.vault.decrypt(row['encrypted_access_token'], row['iv'], row['auth_tag'])

            refresh_token = None
            if row.get('encrypted_refresh_token') and row.get('refresh_token_iv') and row.get('refresh_token_auth_tag'):
                refresh_token = self.vault.decrypt(
                    row['encrypted_refresh_token'],
                    row['refresh_token_iv'],
                    row['refresh_token_auth_tag']
                )
        except AuthenticationFailure as e:
            logger.error(f"Stored credentials for account {account_id} failed to decrypt")
            raise AuthenticationFailure(e.message, account_id=account_id) from e

        expires_at = None
        if row.get('token_expires_at'):
            expires_at = datetime.fromisoformat(row['token_expires_at'])

        return DecryptedToken(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at
        )

    def delete_token(self, account_id: str) -> bool:
        return self.storage.delete_token_row(account_id)
