"""
AES-256-GCM encryption for secrets stored in ``system_settings``.

Ciphertext is stored as ``iv:tag:ciphertext`` with every part hex encoded.
The key comes from ``ENCRYPTION_KEY`` (64 hex characters, i.e. 32 bytes),
read from the Flask config when an app context is active and from the
environment otherwise.
"""

from __future__ import annotations

import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from flask import current_app, has_app_context

KEY_HEX_LENGTH = 64
IV_LENGTH = 16
TAG_LENGTH = 16
MASK = "••••••••"


class EncryptionError(ValueError):
    """Raised when a value cannot be encrypted or decrypted."""


def _configured_key() -> str | None:
    if has_app_context():
        key = current_app.config.get("ENCRYPTION_KEY")
        if key:
            return key
    return os.environ.get("ENCRYPTION_KEY")


def _load_key(key: str | None = None) -> bytes:
    key = key if key is not None else _configured_key()
    if not key:
        raise EncryptionError("ENCRYPTION_KEY is not set.")
    if len(key) != KEY_HEX_LENGTH:
        raise EncryptionError("ENCRYPTION_KEY must be 64 hex characters (32 bytes).")
    try:
        return bytes.fromhex(key)
    except ValueError as exc:
        raise EncryptionError("ENCRYPTION_KEY must be hex encoded.") from exc


def is_encryption_configured() -> bool:
    try:
        _load_key()
    except EncryptionError:
        return False
    return True


def encrypt(plaintext: str, *, key: str | None = None) -> str:
    aesgcm = AESGCM(_load_key(key))
    iv = secrets.token_bytes(IV_LENGTH)
    sealed = aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
    # AESGCM appends the tag to the ciphertext.
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt(payload: str, *, key: str | None = None) -> str:
    parts = payload.split(":")
    if len(parts) != 3:
        raise EncryptionError("Invalid ciphertext format.")
    try:
        iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
    except ValueError as exc:
        raise EncryptionError("Invalid ciphertext format.") from exc
    if len(iv) != IV_LENGTH:
        raise EncryptionError("Invalid initialization vector.")
    if len(tag) != TAG_LENGTH:
        raise EncryptionError("Invalid authentication tag.")

    aesgcm = AESGCM(_load_key(key))
    try:
        return aesgcm.decrypt(iv, ciphertext + tag, None).decode("utf-8")
    except InvalidTag as exc:
        raise EncryptionError("Ciphertext failed authentication.") from exc
    except (ValueError, UnicodeDecodeError) as exc:
        raise EncryptionError("Ciphertext could not be decrypted.") from exc


def mask_value(value: str) -> str:
    """Display form of a secret: first 7 and last 4 characters."""
    if len(value) <= 12:
        return MASK
    return f"{value[:7]}{MASK}{value[-4:]}"
