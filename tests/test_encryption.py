import pytest

from sophie_hub.security.encryption import (
    MASK,
    EncryptionError,
    decrypt,
    encrypt,
    is_encryption_configured,
    mask_value,
)

KEY = "ab" * 32


def test_encrypt_decrypt_with_explicit_key():
    payload = encrypt("ya29.secret-token", key=KEY)

    iv, tag, ciphertext = payload.split(":")
    assert len(bytes.fromhex(iv)) == 16
    assert len(bytes.fromhex(tag)) == 16
    assert bytes.fromhex(ciphertext) != b"ya29.secret-token"
    assert decrypt(payload, key=KEY) == "ya29.secret-token"


def test_encrypt_uses_fresh_iv_each_time():
    assert encrypt("same", key=KEY) != encrypt("same", key=KEY)


def test_app_config_key_is_used_by_default(app):
    assert is_encryption_configured() is True
    assert decrypt(encrypt("from-config")) == "from-config"


def test_tampered_ciphertext_fails_authentication():
    iv, tag, ciphertext = encrypt("secret", key=KEY).split(":")
    flipped = format(int(ciphertext[:2], 16) ^ 0xFF, "02x") + ciphertext[2:]

    with pytest.raises(EncryptionError, match="failed authentication"):
        decrypt(f"{iv}:{tag}:{flipped}", key=KEY)


def test_wrong_key_fails_authentication():
    payload = encrypt("secret", key=KEY)
    with pytest.raises(EncryptionError):
        decrypt(payload, key="cd" * 32)


@pytest.mark.parametrize("payload", ["not-a-payload", "zz:zz:zz", "00:00:00"])
def test_malformed_payloads(payload):
    with pytest.raises(EncryptionError):
        decrypt(payload, key=KEY)


@pytest.mark.parametrize("key, message", [("", "not set"), ("abc", "64 hex"), ("g" * 64, "hex encoded")])
def test_invalid_keys(key, message):
    with pytest.raises(EncryptionError, match=message):
        encrypt("value", key=key)


def test_missing_key_reports_unconfigured(app, monkeypatch):
    monkeypatch.setitem(app.config, "ENCRYPTION_KEY", None)
    monkeypatch.delenv("ENCRYPTION_KEY", raising=False)
    assert is_encryption_configured() is False


def test_mask_value():
    assert mask_value("ya29.a0AfH6SMBxyz1234") == f"ya29.a0{MASK}1234"
    assert mask_value("short") == MASK


def test_non_ascii_plaintext_round_trips():
    secret = "clé-秘密-🔑"
    assert decrypt(encrypt(secret, key=KEY), key=KEY) == secret


def test_short_iv_is_rejected_before_decrypting():
    _iv, tag, ciphertext = encrypt("secret", key=KEY).split(":")
    with pytest.raises(EncryptionError, match="initialization vector"):
        decrypt(f"{'00' * 12}:{tag}:{ciphertext}", key=KEY)
