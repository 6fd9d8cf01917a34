import asyncio
import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from research_terminal.errors import AuthTagMismatch, DecryptionFailed
from research_terminal.models import Ciphertext

IV_BYTES = 12
TAG_BYTES = 16
SALT_BYTES = 16
KEY_BYTES = 32


def generate_salt() -> str:
    return os.urandom(SALT_BYTES).hex()


def derive_key(password: str, salt_hex: str) -> bytes:
    try:
        salt = bytes.fromhex(str(salt_hex or ""))
    except ValueError as exc:
        raise DecryptionFailed("Stored salt is not valid hex.") from exc
    if not salt:
        raise DecryptionFailed("Missing salt for key derivation.")
    kdf = Scrypt(salt=salt, length=KEY_BYTES, n=2**14, r=8, p=1)
    return kdf.derive(str(password).encode("utf-8"))


async def derive_key_async(password: str, salt_hex: str) -> bytes:
    return await asyncio.to_thread(derive_key, password, salt_hex)


def _seal(plaintext: bytes, key: bytes) -> tuple[bytes, bytes, bytes]:
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(key).encrypt(iv, plaintext, None)
    return iv, sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]


def _open(iv: bytes, data: bytes, tag: bytes, key: bytes) -> bytes:
    if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
        raise DecryptionFailed("Malformed ciphertext.")
    try:
        return AESGCM(key).decrypt(iv, data + tag, None)
    except InvalidTag as exc:
        raise AuthTagMismatch("Decryption failed: authentication tag mismatch.") from exc


def encrypt(plaintext: str, key: bytes) -> Ciphertext:
    iv, data, tag = _seal(str(plaintext).encode("utf-8"), key)
    return Ciphertext(iv=iv.hex(), encrypted=data.hex(), auth_tag=tag.hex())


def decrypt(ciphertext: Ciphertext, key: bytes) -> str:
    try:
        iv = bytes.fromhex(ciphertext.iv)
        data = bytes.fromhex(ciphertext.encrypted)
        tag = bytes.fromhex(ciphertext.auth_tag)
    except (TypeError, ValueError) as exc:
        raise DecryptionFailed("Malformed ciphertext.") from exc
    plain = _open(iv, data, tag, key)
    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionFailed("Decrypted value is not valid UTF-8.") from exc


def config_key(secret: str) -> bytes:
    return hashlib.sha256(str(secret).encode("utf-8")).digest()[:KEY_BYTES]


def encrypt_blob(plaintext: str, key: bytes) -> dict:
    iv, data, tag = _seal(plaintext.encode("utf-8"), key)
    return {
        "iv": base64.b64encode(iv).decode("ascii"),
        "tag": base64.b64encode(tag).decode("ascii"),
        "data": base64.b64encode(data).decode("ascii"),
    }


def decrypt_blob(blob: dict, key: bytes) -> str:
    try:
        iv = base64.b64decode(str(blob.get("iv", "")), validate=True)
        tag = base64.b64decode(str(blob.get("tag", "")), validate=True)
        data = base64.b64decode(str(blob.get("data", "")), validate=True)
    except (AttributeError, ValueError) as exc:
        raise DecryptionFailed("Malformed encrypted config.") from exc
    return _open(iv, data, tag, key).decode("utf-8")
