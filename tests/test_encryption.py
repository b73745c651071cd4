"""Tests for API key encryption and masking."""

import base64

import pytest

from prismo.errors import ConfigurationError
from prismo.security import (
    MASK_PLACEHOLDER,
    EncryptionError,
    KeyCipher,
    decrypt_api_key,
    encrypt_api_key,
    mask_api_key,
)


SECRET = "unit-test-secret"
N = 1024


class TestEncryption:
    """Tests for AES-256-GCM encryption of API keys."""

    def test_round_trip(self):
        """Test that decrypt(encrypt(x)) == x."""
        token = encrypt_api_key("sk-live-1234567890", SECRET, N)
        assert decrypt_api_key(token, SECRET, N) == "sk-live-1234567890"

    def test_token_layout(self):
        """Test salt(32) | iv(16) | tag(16) | ciphertext layout."""
        token = encrypt_api_key("abc", SECRET, N)
        raw = base64.b64decode(token)
        assert len(raw) == 32 + 16 + 16 + 3

    def test_same_key_encrypts_differently(self):
        """Test that every value gets its own salt and IV."""
        assert encrypt_api_key("same", SECRET, N) != encrypt_api_key("same", SECRET, N)

    def test_plaintext_not_in_token(self):
        """Test that the token does not leak the key."""
        token = encrypt_api_key("sk-plaintext-value", SECRET, N)
        assert "sk-plaintext-value" not in token
        assert b"sk-plaintext-value" not in base64.b64decode(token)

    def test_empty_key_rejected(self):
        """Test that an empty key cannot be encrypted."""
        with pytest.raises(EncryptionError):
            encrypt_api_key("", SECRET, N)

    def test_tampered_token_rejected(self):
        """Test that flipping one ciphertext byte fails authentication."""
        raw = bytearray(base64.b64decode(encrypt_api_key("sk-1234567890", SECRET, N)))
        raw[-1] ^= 0x01
        with pytest.raises(EncryptionError):
            decrypt_api_key(base64.b64encode(bytes(raw)).decode(), SECRET, N)

    def test_wrong_secret_rejected(self):
        """Test that another deployment's secret cannot decrypt."""
        token = encrypt_api_key("sk-1234567890", SECRET, N)
        with pytest.raises(EncryptionError):
            decrypt_api_key(token, "another-secret", N)

    def test_garbage_rejected(self):
        """Test malformed and truncated tokens."""
        with pytest.raises(EncryptionError):
            decrypt_api_key("not base64!!", SECRET, N)
        with pytest.raises(EncryptionError):
            decrypt_api_key(base64.b64encode(b"short").decode(), SECRET, N)


class TestMasking:
    """Tests for key masking boundaries."""

    def test_short_keys_fully_hidden(self):
        """Test that keys under 12 characters reveal nothing."""
        assert mask_api_key("") == MASK_PLACEHOLDER
        assert mask_api_key(None) == MASK_PLACEHOLDER
        assert mask_api_key("12345678901") == MASK_PLACEHOLDER

    def test_twelve_characters(self):
        """Test the shortest key that is partially shown."""
        assert mask_api_key("abcd1234wxyz") == MASK_PLACEHOLDER + "wxyz"

    def test_prefix_never_shown(self):
        """Test that only the last 4 characters of a key are revealed."""
        for key in ("abcd1234wxyz", "sk-proj-0123456789abcdef", "0f" * 16):
            masked = mask_api_key(key)
            assert masked[:4] != key[:4]
            assert masked.endswith(key[-4:])
            assert sum(c != "•" for c in masked) == 4

    def test_long_keys_have_fixed_length(self):
        """Test that the mask does not leak the key length."""
        masked = mask_api_key("sk-" + "x" * 60 + "9876")
        assert masked == MASK_PLACEHOLDER + "9876"


class TestKeyCipher:
    """Tests for the secret-bound cipher."""

    def test_unconfigured_cipher_raises_configuration_error(self):
        """Test that a missing secret is a configuration problem."""
        cipher = KeyCipher(None)
        assert not cipher.is_configured
        with pytest.raises(ConfigurationError):
            cipher.encrypt("sk-1234567890")

    def test_mask_of_stored_token(self):
        """Test that mask() works on ciphertext and never returns plaintext."""
        cipher = KeyCipher(SECRET, N)
        token = cipher.encrypt("sk-abcdefghijklmnop")
        masked = cipher.mask(token)
        assert masked == MASK_PLACEHOLDER + "mnop"
        assert not masked.startswith("sk-a")

    def test_mask_of_nothing(self):
        """Test that no stored key masks to None."""
        assert KeyCipher(SECRET, N).mask(None) is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
