"""Secret handling helpers."""

from .encryption import EncryptionError, decrypt, encrypt, is_encryption_configured, mask_value

__all__ = ["EncryptionError", "decrypt", "encrypt", "is_encryption_configured", "mask_value"]
