"""
AES-256-GCM vault for payment processor tokens at rest.

Tokens are stored as ``ivHex:authTagHex:cipherHex``. Every call to
``encrypt`` draws a fresh random 16-byte IV.
"""
import os
import re

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from registration_payments.core.errors import CredentialError

logger = structlog.get_logger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32

# bytes.fromhex() tolerates whitespace, so fields are matched explicitly
_HEX_FIELD = re.compile(r"(?:[0-9a-fA-F]{2})*")


def _decode_hex(value: str, field: str) -> bytes:
    if not _HEX_FIELD.fullmatch(value):
        raise CredentialError(f"Invalid encrypted token: {field} is not valid hex")
    return bytes.fromhex(value)


class CredentialVault:
    """
    Encrypts and decrypts processor tokens with a process-wide master key.

    Built once at startup from ``Settings.encryption_key`` and injected into
    the services that need it.
    """

    def __init__(self, key: bytes):
        """
        Initialize vault.

        Args:
            key: 32-byte master key

        Raises:
            CredentialError: If the key is not 32 bytes
        """
        if len(key) != KEY_LENGTH:
            raise CredentialError(
                f"Encryption key must be {KEY_LENGTH} bytes, got {len(key)}"
            )
        self._key = key

    @classmethod
    def from_hex(cls, secret: str) -> "CredentialVault":
        """Build a vault from a 64-hex-character secret."""
        if not secret:
            raise CredentialError("Encryption key is not configured")
        return cls(_decode_hex(secret.strip(), "key"))

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a token.

        Args:
            plaintext: Token to protect

        Returns:
            str: ``ivHex:authTagHex:cipherHex``
        """
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(self._key).encrypt(iv, plaintext.encode("utf-8"), None)
        cipher, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{cipher.hex()}"

    def decrypt(self, token: str) -> str:
        """
        Decrypt a token produced by ``encrypt``.

        Args:
            token: ``ivHex:authTagHex:cipherHex``

        Returns:
            str: Plaintext token

        Raises:
            CredentialError: If the token is malformed or fails authentication
        """
        parts = token.split(":")
        if len(parts) != 3:
            raise CredentialError("Invalid encrypted token format")

        iv = _decode_hex(parts[0], "iv")
        tag = _decode_hex(parts[1], "auth tag")
        cipher = _decode_hex(parts[2], "ciphertext")

        if len(iv) != IV_LENGTH:
            raise CredentialError(f"Invalid IV length: expected {IV_LENGTH} bytes")
        if len(tag) != TAG_LENGTH:
            raise CredentialError(f"Invalid auth tag length: expected {TAG_LENGTH} bytes")

        try:
            plaintext = AESGCM(self._key).decrypt(iv, cipher + tag, None)
        except InvalidTag:
            logger.warning("credential_decryption_failed")
            raise CredentialError("Encrypted token failed authentication")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise CredentialError("Decrypted token is not valid UTF-8")
