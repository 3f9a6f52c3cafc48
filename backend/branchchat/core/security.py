"""
Crypto vault for provider API keys stored at rest.
"""
import base64
import hashlib
import logging
import os
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from branchchat.core.config import settings
from branchchat.core.exceptions import DecryptionError


logger = logging.getLogger(__name__)


class CryptoVault:
    """
    Symmetric encryption of small secrets using Fernet (AES-128-CBC + HMAC).

    The key never leaves the vault; callers only see ciphertext strings.
    The empty string is the "no key configured" marker and is passed through
    unchanged in both directions.
    """

    def __init__(self, key: bytes):
        self._fernet = Fernet(key)

    @classmethod
    def from_secret(cls, secret: str) -> "CryptoVault":
        """
        Build a vault from an arbitrary secret string.
        Derives a 32-byte url-safe base64-encoded key using SHA256.
        """
        key = hashlib.sha256(secret.encode()).digest()
        return cls(base64.urlsafe_b64encode(key))

    @classmethod
    def from_key_file(cls, path: Path) -> "CryptoVault":
        """
        Load the per-installation key, generating it on first use.
        """
        path = Path(path)
        if path.exists():
            key = path.read_bytes().strip()
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            key = Fernet.generate_key()
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(key)
            logger.info("Generated new vault key at %s", path)
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string value.

        Args:
            plaintext: The string to encrypt

        Returns:
            Encrypted string (base64 encoded Fernet token)
        """
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt an encrypted string value.

        Args:
            ciphertext: The encrypted string

        Returns:
            Decrypted string

        Raises:
            DecryptionError: If the token is malformed, tampered with, or
                was produced under a different key
        """
        if not ciphertext:
            return ""
        try:
            token = ciphertext.encode("ascii")
        except UnicodeEncodeError as e:
            raise DecryptionError("Ciphertext is not a valid token") from e
        try:
            return self._fernet.decrypt(token).decode("utf-8")
        except InvalidToken as e:
            raise DecryptionError("Ciphertext could not be decrypted with this vault key") from e
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted payload is not valid UTF-8") from e


_vault: Optional[CryptoVault] = None


def get_vault() -> CryptoVault:
    """
    Get the process-wide vault.
    Uses SECRET_KEY when configured, otherwise the installation key file.
    """
    global _vault
    if _vault is None:
        if settings.SECRET_KEY:
            _vault = CryptoVault.from_secret(settings.SECRET_KEY)
        else:
            _vault = CryptoVault.from_key_file(settings.VAULT_KEY_FILE)
    return _vault


def encrypt_value(value: str) -> str:
    """Encrypt a string with the process vault."""
    return get_vault().encrypt(value)


def decrypt_value(encrypted_value: str) -> str:
    """Decrypt a string with the process vault. Raises DecryptionError."""
    return get_vault().decrypt(encrypted_value)
