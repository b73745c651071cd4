"""Security package: API key encryption and masking."""

from prismo.security.encryption import (
    MASK_PLACEHOLDER,
    EncryptionError,
    KeyCipher,
    decrypt_api_key,
    encrypt_api_key,
    mask_api_key,
)

__all__ = [
    "MASK_PLACEHOLDER",
    "EncryptionError",
    "KeyCipher",
    "decrypt_api_key",
    "encrypt_api_key",
    "mask_api_key",
]
