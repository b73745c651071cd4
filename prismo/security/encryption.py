"""
API Key Encryption

Provider API keys are encrypted at rest with AES-256-GCM.

DESIGN DECISION: Each stored value gets its own random salt and IV.
The AES key is derived from the deployment's master secret with scrypt,
so the database alone is useless without PRISMO_ENCRYPTION_SECRET.

Stored layout (base64 of the concatenation):
    salt (32 bytes) | iv (16 bytes) | auth tag (16 bytes) | ciphertext

NEVER log, return, or persist the plaintext. Read paths only ever see
mask_api_key() output.
"""

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from prismo.errors import ConfigurationError


SALT_LENGTH = 32
IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
KEY_LENGTH = 32

MASK_PLACEHOLDER = "••••••••"
SUFFIX_LENGTH = 4


class EncryptionError(Exception):
    """Encryption or decryption failed (empty input, bad token, wrong secret)."""
    pass


def _derive_key(secret: str, salt: bytes, n: int = 16384) -> bytes:
    kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=n, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


def encrypt_api_key(api_key: str, secret: str, n: int = 16384) -> str:
    """
    Encrypt an API key.

    Args:
        api_key: Plaintext key
        secret: Master secret
        n: scrypt cost parameter

    Returns:
        Base64 token containing salt, IV, auth tag and ciphertext

    Raises:
        EncryptionError: If the key is empty
    """
    if not api_key:
        raise EncryptionError("API key cannot be empty")

    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = _derive_key(secret, salt, n)

    # AESGCM appends the tag to the ciphertext; we store it in front
    sealed = AESGCM(key).encrypt(iv, api_key.encode("utf-8"), None)
    ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]

    return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")


def decrypt_api_key(token: str, secret: str, n: int = 16384) -> str:
    """
    Decrypt a token produced by encrypt_api_key.

    Raises:
        EncryptionError: If the token is empty, malformed, tampered with,
            or was encrypted under a different secret
    """
    if not token:
        raise EncryptionError("Encrypted key cannot be empty")

    try:
        combined = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncryptionError(f"Encrypted key is not valid base64: {e}")

    header = SALT_LENGTH + IV_LENGTH + AUTH_TAG_LENGTH
    if len(combined) <= header:
        raise EncryptionError("Encrypted key is truncated")

    salt = combined[:SALT_LENGTH]
    iv = combined[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
    tag = combined[SALT_LENGTH + IV_LENGTH:header]
    ciphertext = combined[header:]

    key = _derive_key(secret, salt, n)
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag:
        raise EncryptionError("Failed to decrypt API key - data corrupted or wrong secret")

    return plaintext.decode("utf-8")


def mask_api_key(api_key: Optional[str]) -> str:
    """
    Mask an API key for display.

    Keys shorter than 12 characters are fully hidden; longer keys show
    only their last 4 characters behind the placeholder.
    """
    if not api_key or len(api_key) < 12:
        return MASK_PLACEHOLDER

    return f"{MASK_PLACEHOLDER}{api_key[-SUFFIX_LENGTH:]}"


class KeyCipher:
    """
    Encrypts and decrypts API keys with the deployment's master secret.

    Owned by the SettingsService - the only component allowed to
    see plaintext keys.
    """

    def __init__(self, secret: Optional[str], scrypt_n: int = 16384):
        self._secret = secret
        self._n = scrypt_n

    @property
    def is_configured(self) -> bool:
        return bool(self._secret)

    def _require_secret(self) -> str:
        if not self._secret:
            raise ConfigurationError(
                "Encryption secret not configured. Set PRISMO_ENCRYPTION_SECRET."
            )
        return self._secret

    def encrypt(self, api_key: str) -> str:
        return encrypt_api_key(api_key, self._require_secret(), self._n)

    def decrypt(self, token: str) -> str:
        return decrypt_api_key(token, self._require_secret(), self._n)

    def mask(self, token: Optional[str]) -> Optional[str]:
        """
        Masked form of a stored key, or None if no key is stored.

        Falls back to the placeholder when the token cannot be decrypted
        (e.g. secret rotated) rather than failing the settings read.
        """
        if not token:
            return None
        try:
            return mask_api_key(self.decrypt(token))
        except (EncryptionError, ConfigurationError):
            return MASK_PLACEHOLDER
