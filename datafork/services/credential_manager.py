"""
Credential Manager for datafork

Encrypts database passwords at rest with AES-256-GCM and generates the
passwords handed to freshly provisioned containers.

Ciphertext envelope (hex encoded): 12-byte random nonce || ciphertext || tag.
"""

import binascii
import logging
import os
import secrets
import string

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import ConfigurationError, InternalError

logger = logging.getLogger("uvicorn.error")

KEY_BYTES = 32
NONCE_BYTES = 12

# Alphanumeric only: passwords end up in shell pipelines and container env vars
PASSWORD_ALPHABET = string.ascii_letters + string.digits


class CredentialManager:
    """Symmetric vault for database passwords. One static key per process."""

    def __init__(self, key_hex: str):
        try:
            key = bytes.fromhex(key_hex or "")
        except ValueError:
            raise ConfigurationError("Encryption key must be hex encoded")
        if len(key) != KEY_BYTES:
            raise ConfigurationError(
                f"Encryption key must be {KEY_BYTES * 2} hex characters ({KEY_BYTES} bytes), "
                f"got {len(key)} bytes"
            )
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return (nonce + ciphertext).hex()

    def decrypt(self, ciphertext_hex: str) -> str:
        """
        Decrypt a value produced by ``encrypt``.

        Raises:
            InternalError: on malformed hex, truncated payload or a failed
                authentication tag. Never returns wrong plaintext.
        """
        try:
            payload = binascii.unhexlify(ciphertext_hex)
        except (binascii.Error, ValueError, TypeError) as e:
            logger.error(f"Credential decryption failed: invalid hex payload ({e})")
            raise InternalError("Credential decryption failed: invalid encoding")

        if len(payload) < NONCE_BYTES:
            logger.error(f"Credential decryption failed: payload too short ({len(payload)} bytes)")
            raise InternalError("Credential decryption failed: payload too short")

        nonce, ciphertext = payload[:NONCE_BYTES], payload[NONCE_BYTES:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag:
            logger.error("Credential decryption failed: authentication tag mismatch")
            raise InternalError("Credential decryption failed: authentication failed")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise InternalError("Credential decryption failed: plaintext is not UTF-8")

    @staticmethod
    def generate_password(length: int = 24) -> str:
        """
        Generate a secure random password.

        Args:
            length: Length of the password (default: 24)

        Returns:
            Random alphanumeric password string
        """
        return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))
