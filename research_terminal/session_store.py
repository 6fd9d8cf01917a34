import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from research_terminal.models import SessionSnapshot

SESSION_STATE_VERSION = 1

_SESSION_FIELDS = (
    "current_research_result",
    "current_research_filename",
    "current_research_summary",
    "current_research_query",
    "session_model",
    "session_character",
    "memory_enabled",
    "memory_depth",
    "memory_github_enabled",
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def sanitize_snapshot(raw: Any) -> SessionSnapshot:
    if isinstance(raw, SessionSnapshot):
        raw = raw.model_dump()
    if not isinstance(raw, dict):
        return SessionSnapshot()
    try:
        return SessionSnapshot.model_validate(raw)
    except ValueError as exc:
        print(f"[session] Discarding invalid session snapshot: {exc}")
        return SessionSnapshot()


class SessionStateStore:
    """Durable single-operator snapshot with serialized writes."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._state = SessionSnapshot()
        self._loaded = False
        self._write_lock = asyncio.Lock()

    @property
    def state(self) -> SessionSnapshot:
        return self._state.model_copy()

    def _read_from_disk(self) -> SessionSnapshot:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return SessionSnapshot()
        except (OSError, ValueError) as exc:
            print(f"[session] Failed to read session snapshot; using defaults. error={exc}")
            return SessionSnapshot()
        return sanitize_snapshot(raw)

    def _write_to_disk(self, snapshot: SessionSnapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        payload = snapshot.model_dump(by_alias=True)
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    async def load(self, force: bool = False) -> SessionSnapshot:
        if not self._loaded or force:
            self._state = await asyncio.to_thread(self._read_from_disk)
            self._loaded = True
        return self._state.model_copy()

    async def _enqueue_write(self, snapshot: SessionSnapshot) -> None:
        async with self._write_lock:
            try:
                await asyncio.to_thread(self._write_to_disk, snapshot)
            except OSError as exc:
                print(f"[session] Session snapshot write failed: {exc}")
                raise

    async def save(self, patch: Optional[Dict[str, Any]] = None) -> SessionSnapshot:
        patch = dict(patch or {})
        merged = {**self._state.model_dump(), **patch}
        if not patch.get("updated_at"):
            merged["updated_at"] = _now_iso()
        self._state = sanitize_snapshot(merged)
        self._loaded = True
        await self._enqueue_write(self._state)
        return self._state.model_copy()

    async def clear(self) -> SessionSnapshot:
        self._state = SessionSnapshot()
        self._loaded = True
        await self._enqueue_write(self._state)
        return self._state.model_copy()

    def apply_state_to_ref(self, session: Any, state: Optional[SessionSnapshot] = None) -> Any:
        snapshot = state or self._state
        if session is None:
            return session
        for name in _SESSION_FIELDS:
            setattr(session, name, getattr(snapshot, name))
        return session

    def snapshot_from_ref(self, session: Any) -> SessionSnapshot:
        values = {name: getattr(session, name, None) for name in _SESSION_FIELDS}
        values["updated_at"] = _now_iso()
        return sanitize_snapshot(values)

    async def persist_from_ref(self, session: Any, patch: Optional[Dict[str, Any]] = None) -> SessionSnapshot:
        base = self.snapshot_from_ref(session).model_dump()
        return await self.save({**base, **(patch or {})})
