import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from research_terminal.crypto import config_key, decrypt_blob, encrypt_blob
from research_terminal.errors import ConfigError, DecryptionFailed

CONFIG_VERSION = 1


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class EncryptedConfigStore:
    """Optional AES-GCM encrypted JSON config keyed by a process secret."""

    def __init__(self, path: Path, secret: str) -> None:
        self.path = Path(path)
        self.secret = str(secret or "")

    @property
    def enabled(self) -> bool:
        return bool(self.secret)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        envelope = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(envelope, dict) or not isinstance(envelope.get("cipher"), dict):
            raise ConfigError(f"Encrypted config at {self.path} is malformed.")
        plain = decrypt_blob(envelope["cipher"], config_key(self.secret))
        data = json.loads(plain)
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> Dict[str, Any]:
        created_at = _now_iso()
        if self.path.exists():
            try:
                previous = json.loads(self.path.read_text(encoding="utf-8"))
                created_at = str(previous.get("createdAt") or created_at)
            except (OSError, ValueError, AttributeError):
                pass
        envelope = {
            "version": CONFIG_VERSION,
            "createdAt": created_at,
            "updatedAt": _now_iso(),
            "cipher": encrypt_blob(json.dumps(data, ensure_ascii=False), config_key(self.secret)),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(envelope, indent=2), encoding="utf-8")
        tmp.replace(self.path)
        return envelope

    async def load(self) -> Dict[str, Any]:
        if not self.enabled:
            return {}
        try:
            return await asyncio.to_thread(self._read)
        except DecryptionFailed as exc:
            raise ConfigError(f"Encrypted config could not be decrypted: {exc}") from exc

    async def save(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not self.enabled:
            raise ConfigError("BITCORE_CONFIG_SECRET is not set; cannot write encrypted config.")
        return await asyncio.to_thread(self._write, dict(data))
