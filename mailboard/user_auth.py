"""
User and session store backing the identity collaborator.

Mailboard does not own authentication; this module is the minimal local
implementation the API middleware uses to turn a bearer token into a user.
Uses its own SQLite database (users.db), separate from the mail data.
"""

import sqlite3
import hashlib
import secrets
import uuid
from pathlib import Path
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)


class UserAuth:
    """User authentication and session manager."""

    # Session expiry in hours
    SESSION_EXPIRY_HOURS = 24

    def __init__(self, db_path: str = "users.db", session_expiry_hours: Optional[int] = None):
        """
        Initialize the user store.

        Args:
            db_path: Path to SQLite database file
            session_expiry_hours: Override the default session lifetime
        """
        self.db_path = Path(db_path)
        if session_expiry_hours is not None:
            self.SESSION_EXPIRY_HOURS = session_expiry_hours
        self._init_db()

    def _init_db(self):
        """Create database tables if they don't exist."""
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    is_active INTEGER DEFAULT 1,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    last_login TEXT
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    token TEXT UNIQUE NOT NULL,
                    expires_at TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
            ''')

            conn.commit()
            logger.info(f"User database initialized at {self.db_path}")
        finally:
            conn.close()

    def _hash_password(self, password: str) -> str:
        """Hash a password using PBKDF2 with SHA256."""
        salt = secrets.token_hex(32)
        hash_obj = hashlib.pbkdf2_hmac(
            'sha256',
            password.encode('utf-8'),
            salt.encode('utf-8'),
            100000  # iterations
        )
        return f"{salt}:{hash_obj.hex()}"

    def _verify_password(self, password: str, password_hash: str) -> bool:
        """Verify a password against its hash."""
        try:
            salt, stored_hash = password_hash.split(':')
        except ValueError:
            logger.error("Password verification error: malformed hash")
            return False

        hash_obj = hashlib.pbkdf2_hmac(
            'sha256',
            password.encode('utf-8'),
            salt.encode('utf-8'),
            100000
        )
        return secrets.compare_digest(hash_obj.hex(), stored_hash)

    def create_user(self, email: str, password: str) -> str:
        """
        Create a new user.

        Returns the new user's id.
        """
        user_id = uuid.uuid4().hex
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO users (id, email, password_hash)
                VALUES (?, ?, ?)
            ''', (user_id, email.strip().lower(), self._hash_password(password)))
            conn.commit()
            logger.info(f"Created user {email}")
            return user_id
        finally:
            conn.close()

    def authenticate(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        """
        Authenticate a user with email and password.

        Returns user dict if successful, None if failed.
        """
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT id, email, password_hash, is_active
                FROM users WHERE email = ?
            ''', (email.strip().lower(),))

            row = cursor.fetchone()
            if row is None:
                logger.warning(f"Authentication failed: user '{email}' not found")
                return None

            user_id, email, password_hash, is_active = row

            if not is_active:
                logger.warning(f"Authentication failed: user '{email}' is inactive")
                return None

            if not self._verify_password(password, password_hash):
                logger.warning(f"Authentication failed: incorrect password for '{email}'")
                return None

            cursor.execute('''
                UPDATE users SET last_login = ? WHERE id = ?
            ''', (datetime.utcnow().isoformat(), user_id))
            conn.commit()

            return {'id': user_id, 'email': email}
        finally:
            conn.close()

    def create_session(self, user_id: str) -> str:
        """
        Create a new session for a user.

        Returns the session token.
        """
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()

            token = secrets.token_urlsafe(32)
            expires_at = datetime.utcnow() + timedelta(hours=self.SESSION_EXPIRY_HOURS)

            cursor.execute('''
                INSERT INTO sessions (user_id, token, expires_at)
                VALUES (?, ?, ?)
            ''', (user_id, token, expires_at.isoformat()))

            conn.commit()
        finally:
            conn.close()

        self._cleanup_expired_sessions()
        return token

    def validate_session(self, token: str) -> Optional[Dict[str, Any]]:
        """
        Validate a session token.

        Returns {'id', 'email'} if valid, None if invalid or expired.
        """
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()

            cursor.execute('''
                SELECT s.user_id, s.expires_at, u.email, u.is_active
                FROM sessions s
                JOIN users u ON s.user_id = u.id
                WHERE s.token = ?
            ''', (token,))

            row = cursor.fetchone()
            if row is None:
                return None

            user_id, expires_at, email, is_active = row

            if datetime.fromisoformat(expires_at) < datetime.utcnow():
                cursor.execute('DELETE FROM sessions WHERE token = ?', (token,))
                conn.commit()
                return None

            if not is_active:
                return None

            return {'id': user_id, 'email': email}
        finally:
            conn.close()

    def invalidate_session(self, token: str) -> bool:
        """
        Invalidate (delete) a session token.

        Returns True if session was found and deleted.
        """
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()
            cursor.execute('DELETE FROM sessions WHERE token = ?', (token,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def _cleanup_expired_sessions(self):
        """Remove expired sessions from the database."""
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()
            cursor.execute('''
                DELETE FROM sessions WHERE expires_at < ?
            ''', (datetime.utcnow().isoformat(),))
            deleted = cursor.rowcount
            conn.commit()
            if deleted > 0:
                logger.info(f"Cleaned up {deleted} expired sessions")
        finally:
            conn.close()
