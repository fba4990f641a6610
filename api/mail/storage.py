"""
SQLite storage for mail accounts and their encrypted tokens.
Provides the account store used for ownership checks and the raw token rows
the token manager encrypts into and decrypts from.
"""

import sqlite3
import logging
import uuid
from typing import List, Dict, Any, Optional
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from contextlib import contextmanager

from .providers.base import ProviderType

logger = logging.getLogger(__name__)


@dataclass
class MailAccount:
    """A connected mailbox."""
    id: str
    user_id: str
    provider: ProviderType
    account_name: str
    email_address: str
    is_enabled: bool = True
    sync_frequency_minutes: int = 5
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'userId': self.user_id,
            'provider': self.provider.value,
            'accountName': self.account_name,
            'emailAddress': self.email_address,
            'isEnabled': self.is_enabled,
            'syncFrequencyMinutes': self.sync_frequency_minutes,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
        }


class DuplicateAccountError(Exception):
    """An account with the same user, provider and address already exists."""


class MailStorage:
    """
    SQLite-based storage for mail accounts and tokens.
    """

    UPDATABLE_FIELDS = ('account_name', 'email_address', 'is_enabled', 'sync_frequency_minutes')

    def __init__(self, db_path: str = "mail_data.db"):
        """
        Initialize mail storage.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._init_database()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with context management."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_database(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS mail_accounts (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    provider TEXT NOT NULL CHECK (provider IN ('outlook', 'gmail', 'imap')),
                    account_name TEXT NOT NULL,
                    email_address TEXT NOT NULL,
                    is_enabled INTEGER NOT NULL DEFAULT 1,
                    sync_frequency_minutes INTEGER NOT NULL DEFAULT 5 CHECK (sync_frequency_minutes >= 1),
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(user_id, provider, email_address)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS mail_accounts_user_idx
                ON mail_accounts(user_id, is_enabled)
            """)

            # Access and refresh tokens each have their own IV and auth tag
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS mail_tokens (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL UNIQUE,
                    encrypted_access_token TEXT NOT NULL,
                    iv TEXT NOT NULL,
                    auth_tag TEXT NOT NULL,
                    encrypted_refresh_token TEXT,
                    refresh_token_iv TEXT,
                    refresh_token_auth_tag TEXT,
                    token_expires_at TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (account_id) REFERENCES mail_accounts(id) ON DELETE CASCADE
                )
            """)

            logger.info(f"Mail database initialized at {self.db_path}")

    def _row_to_account(self, row: sqlite3.Row) -> MailAccount:
        return MailAccount(
            id=row['id'],
            user_id=row['user_id'],
            provider=ProviderType(row['provider']),
            account_name=row['account_name'],
            email_address=row['email_address'],
            is_enabled=bool(row['is_enabled']),
            sync_frequency_minutes=row['sync_frequency_minutes'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    # ============ Accounts ============

    def add_account(
        self,
        user_id: str,
        provider: ProviderType,
        account_name: str,
        email_address: str,
        is_enabled: bool = True,
        sync_frequency_minutes: int = 5
    ) -> MailAccount:
        """
        Add a new mail account.

        Raises:
            DuplicateAccountError: (user, provider, email) already linked
        """
        account_id = uuid.uuid4().hex
        try:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO mail_accounts
                    (id, user_id, provider, account_name, email_address, is_enabled, sync_frequency_minutes)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    account_id,
                    user_id,
                    ProviderType(provider).value,
                    account_name,
                    email_address.strip().lower(),
                    int(is_enabled),
                    sync_frequency_minutes
                ))
        except sqlite3.IntegrityError as e:
            if 'UNIQUE constraint failed' in str(e):
                raise DuplicateAccountError(
                    f"{provider} account {email_address} is already linked"
                ) from e
            raise

        logger.info(f"Added {ProviderType(provider).value} account {account_id} for user {user_id}")
        return self.get_account(account_id)

    def get_account(self, account_id: str) -> Optional[MailAccount]:
        """Get an account by id."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM mail_accounts WHERE id = ?", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def lookup_account(self, account_id: str) -> Optional[MailAccount]:
        """Account store contract used for ownership checks."""
        return self.get_account(account_id)

    def list_accounts(self, user_id: str, enabled_only: bool = False) -> List[MailAccount]:
        """List a user's accounts, oldest first."""
        query = "SELECT * FROM mail_accounts WHERE user_id = ?"
        params: List[Any] = [user_id]
        if enabled_only:
            query += " AND is_enabled = 1"
        query += " ORDER BY created_at ASC, rowid ASC"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_account(row) for row in rows]

    def update_account(self, account_id: str, **kwargs) -> bool:
        """
        Update account settings.

        Only account_name, email_address, is_enabled and sync_frequency_minutes
        may change. Returns True if the account exists.
        """
        updates = []
        values = []
        for key, value in kwargs.items():
            if key not in self.UPDATABLE_FIELDS or value is None:
                continue
            if key == 'is_enabled':
                value = int(value)
            elif key == 'email_address':
                value = value.strip().lower()
            updates.append(f"{key} = ?")
            values.append(value)

        if not updates:
            return self.get_account(account_id) is not None

        updates.append("updated_at = ?")
        values.append(datetime.utcnow().isoformat())
        values.append(account_id)

        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    f"UPDATE mail_accounts SET {', '.join(updates)} WHERE id = ?",
                    values
                )
                return cursor.rowcount > 0
        except sqlite3.IntegrityError as e:
            if 'UNIQUE constraint failed' in str(e):
                raise DuplicateAccountError(str(e)) from e
            raise

    def delete_account(self, account_id: str) -> bool:
        """Delete an account; its tokens are removed by cascade."""
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM mail_accounts WHERE id = ?", (account_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted mail account {account_id}")
        return deleted

    # ============ Tokens ============

    def save_token_row(self, account_id: str, row: Dict[str, Any]) -> None:
        """Insert or replace the encrypted token row for an account."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO mail_tokens
                (account_id, encrypted_access_token, iv, auth_tag,
                 encrypted_refresh_token, refresh_token_iv, refresh_token_auth_tag, token_expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    encrypted_access_token = excluded.encrypted_access_token,
                    iv = excluded.iv,
                    auth_tag = excluded.auth_tag,
                    encrypted_refresh_token = excluded.encrypted_refresh_token,
                    refresh_token_iv = excluded.refresh_token_iv,
                    refresh_token_auth_tag = excluded.refresh_token_auth_tag,
                    token_expires_at = excluded.token_expires_at,
                    updated_at = CURRENT_TIMESTAMP
            """, (
                account_id,
                row['encrypted_access_token'],
                row['iv'],
                row['auth_tag'],
                row.get('encrypted_refresh_token'),
                row.get('refresh_token_iv'),
                row.get('refresh_token_auth_tag'),
                row.get('token_expires_at'),
            ))

    def get_token_row(self, account_id: str) -> Optional[Dict[str, Any]]:
        """Get the encrypted token row for an account."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM mail_tokens WHERE account_id = ?", (account_id,)
            ).fetchone()
        return dict(row) if row else None

    def delete_token_row(self, account_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM mail_tokens WHERE account_id = ?", (account_id,))
            return cursor.rowcount > 0
