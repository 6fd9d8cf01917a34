import asyncio
import json

import pytest

from research_terminal.config_store import EncryptedConfigStore
from research_terminal.crypto import (
    config_key,
    decrypt,
    decrypt_blob,
    derive_key,
    encrypt,
    encrypt_blob,
    generate_salt,
)
from research_terminal.errors import AuthTagMismatch, ConfigError, DecryptionFailed
from research_terminal.models import Ciphertext


def _flip_last_hex(value: str) -> str:
    last = value[-1]
    return value[:-1] + ("0" if last != "0" else "1")


def test_encrypt_round_trip_with_derived_key():
    salt = generate_salt()
    key = derive_key("pw1", salt)
    ciphertext = encrypt("brave-key-123", key)
    assert ciphertext.encrypted != "brave-key-123"
    assert decrypt(ciphertext, derive_key("pw1", salt)) == "brave-key-123"


def test_each_encryption_uses_a_fresh_iv():
    key = derive_key("pw1", generate_salt())
    assert encrypt("same", key).iv != encrypt("same", key).iv


@pytest.mark.parametrize("field", ["iv", "encrypted", "auth_tag"])
def test_tampering_is_detected(field):
    key = derive_key("pw1", generate_salt())
    ciphertext = encrypt("secret value", key)
    tampered = ciphertext.model_copy(update={field: _flip_last_hex(getattr(ciphertext, field))})
    with pytest.raises(AuthTagMismatch):
        decrypt(tampered, key)


def test_wrong_password_fails_authentication():
    salt = generate_salt()
    ciphertext = encrypt("secret value", derive_key("pw1", salt))
    with pytest.raises(AuthTagMismatch):
        decrypt(ciphertext, derive_key("pw2", salt))


def test_malformed_ciphertext_and_salt():
    key = derive_key("pw1", generate_salt())
    with pytest.raises(DecryptionFailed):
        decrypt(Ciphertext(iv="zz", encrypted="00", authTag="00"), key)
    with pytest.raises(DecryptionFailed):
        decrypt(Ciphertext(iv="00", encrypted="00", authTag="00"), key)
    with pytest.raises(DecryptionFailed):
        derive_key("pw1", "")


def test_ciphertext_serializes_with_auth_tag_alias():
    ciphertext = encrypt("x", derive_key("pw1", generate_salt()))
    dumped = ciphertext.model_dump(by_alias=True)
    assert set(dumped) == {"iv", "encrypted", "authTag"}


def test_blob_round_trip_and_wrong_secret():
    blob = encrypt_blob('{"github": {"owner": "acme"}}', config_key("s3cret"))
    assert set(blob) == {"iv", "tag", "data"}
    assert decrypt_blob(blob, config_key("s3cret")) == '{"github": {"owner": "acme"}}'
    with pytest.raises(AuthTagMismatch):
        decrypt_blob(blob, config_key("other"))


def test_config_store_round_trip(tmp_path):
    path = tmp_path / "config.enc.json"
    store = EncryptedConfigStore(path, "s3cret")

    async def scenario():
        await store.save({"github": {"owner": "acme", "repo": "notes"}})
        return await store.load()

    assert asyncio.run(scenario()) == {"github": {"owner": "acme", "repo": "notes"}}
    envelope = json.loads(path.read_text(encoding="utf-8"))
    assert envelope["version"] == 1
    assert "acme" not in path.read_text(encoding="utf-8")


def test_config_store_wrong_secret_raises_config_error(tmp_path):
    path = tmp_path / "config.enc.json"
    asyncio.run(EncryptedConfigStore(path, "s3cret").save({"a": 1}))
    with pytest.raises(ConfigError):
        asyncio.run(EncryptedConfigStore(path, "different").load())


def test_config_store_without_secret_is_disabled(tmp_path):
    store = EncryptedConfigStore(tmp_path / "config.enc.json", "")
    assert asyncio.run(store.load()) == {}
    with pytest.raises(ConfigError):
        asyncio.run(store.save({"a": 1}))
