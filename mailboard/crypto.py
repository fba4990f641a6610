"""
AES-256-GCM encryption for provider tokens at rest.

The key is a 256-bit secret supplied as a 64-character hex string, normally
through the MAIL_ENCRYPTION_KEY environment variable. Every call to encrypt()
draws a fresh random IV, so the same plaintext never produces the same
ciphertext twice.
"""

import os
import re
import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationFailure, ConfigurationError

KEY_ENV_VAR = "MAIL_ENCRYPTION_KEY"
IV_LENGTH = 16  # bytes
TAG_LENGTH = 16  # bytes, fixed by GCM

_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class EncryptedValue:
    """Hex-encoded output of a single encryption."""
    ciphertext: str
    iv: str
    auth_tag: str


class TokenVault:
    """
    Encrypts and decrypts token strings with one process-wide key.

    If no key is given, the key is read from the environment on every call so
    that a key provisioned after startup is picked up.
    """

    def __init__(self, key: Optional[str] = None):
        self._key_hex = key

    def _get_key(self) -> bytes:
        key = self._key_hex if self._key_hex is not None else os.environ.get(KEY_ENV_VAR)
        if not key:
            raise ConfigurationError(f"{KEY_ENV_VAR} is not set")
        if not _KEY_PATTERN.match(key):
            raise ConfigurationError(f"{KEY_ENV_VAR} must be a 64-character hexadecimal string")
        return bytes.fromhex(key)

    def encrypt(self, plaintext: str) -> EncryptedValue:
        """Encrypt a string. Returns ciphertext, IV and auth tag as hex."""
        aesgcm = AESGCM(self._get_key())
        iv = os.urandom(IV_LENGTH)

        # AESGCM appends the tag to the ciphertext
        sealed = aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        return EncryptedValue(
            ciphertext=ciphertext.hex(),
            iv=iv.hex(),
            auth_tag=tag.hex(),
        )

    def decrypt(self, ciphertext: str, iv: str, auth_tag: str) -> str:
        """
        Decrypt a value produced by encrypt().

        Raises:
            AuthenticationFailure: the tag does not match the ciphertext/IV pair
                (tampering or wrong key), or the inputs are not valid hex.
            ConfigurationError: the key is missing or malformed.
        """
        aesgcm = AESGCM(self._get_key())

        try:
            iv_bytes = bytes.fromhex(iv)
            tag_bytes = bytes.fromhex(auth_tag)
            ciphertext_bytes = bytes.fromhex(ciphertext)
        except ValueError as e:
            raise AuthenticationFailure(f"Malformed encrypted value: {e}")

        if len(tag_bytes) != TAG_LENGTH or not iv_bytes:
            raise AuthenticationFailure("Malformed encrypted value: bad IV or auth tag length")

        try:
            plaintext = aesgcm.decrypt(iv_bytes, ciphertext_bytes + tag_bytes, None)
        except InvalidTag:
            raise AuthenticationFailure("Encrypted value failed authentication")

        return plaintext.decode("utf-8")


def generate_encryption_key() -> str:
    """Generate a random 32-byte key as 64 hex characters (for provisioning)."""
    return secrets.token_hex(32)


_default_vault = TokenVault()


def encrypt(plaintext: str) -> EncryptedValue:
    """Encrypt with the key from the environment."""
    return _default_vault.encrypt(plaintext)


def decrypt(ciphertext: str, iv: str, auth_tag: str) -> str:
    """Decrypt with the key from the environment."""
    return _default_vault.decrypt(ciphertext, iv, auth_tag)
