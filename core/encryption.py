"""
Field-level encryption for sensitive columns (mobile numbers, e-mails, ...).

Ciphertext format is ``<iv hex>:<auth tag hex>:<ciphertext hex>`` so values
written by the legacy bridge and by this pipeline stay interchangeable.
"""

import os
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

from core.config import settings
from core.exceptions import EncryptionError
import logging

logger = logging.getLogger(__name__)

AES_KEY_SIZE = 32
GCM_TAG_SIZE = 16


def load_key(raw: Optional[str]) -> bytes:
    """
    Turn the configured key into bytes.

    ``hex:``-prefixed values are decoded as hex, anything else is taken as
    UTF-8 text.
    """
    if not raw:
        raise EncryptionError("ENCRYPTION_KEY is not configured")

    key = bytes.fromhex(raw[4:]) if raw.startswith("hex:") else raw.encode("utf-8")
    if len(key) != AES_KEY_SIZE:
        raise EncryptionError(
            f"Invalid key size. Expected {AES_KEY_SIZE} bytes, got {len(key)}"
        )
    return key


class FieldCipher:
    """AES-256-GCM encryption of single string values."""

    def __init__(self, key: bytes, iv_length: int = 12):
        if len(key) != AES_KEY_SIZE:
            raise EncryptionError(
                f"Invalid key size. Expected {AES_KEY_SIZE} bytes, got {len(key)}"
            )
        self.iv_length = iv_length
        self.cipher = AESGCM(key)

    @classmethod
    def from_settings(cls) -> "FieldCipher":
        return cls(load_key(settings.ENCRYPTION_KEY), settings.ENCRYPTION_IV_LENGTH)

    def encrypt(self, plaintext: str) -> str:
        try:
            iv = os.urandom(self.iv_length)
            sealed = self.cipher.encrypt(iv, plaintext.encode("utf-8"), None)
        except Exception as e:
            raise EncryptionError("Encryption operation failed", original_exception=e)

        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-GCM_TAG_SIZE], sealed[-GCM_TAG_SIZE:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        try:
            iv_hex, tag_hex, ciphertext_hex = token.split(":")
            sealed = bytes.fromhex(ciphertext_hex) + bytes.fromhex(tag_hex)
            return self.cipher.decrypt(bytes.fromhex(iv_hex), sealed, None).decode("utf-8")
        except InvalidTag as e:
            raise EncryptionError("Data authentication failed", original_exception=e)
        except ValueError as e:
            raise EncryptionError("Malformed ciphertext", original_exception=e)
