import copy
import time
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Union

LEVELS = ("debug", "info", "warn", "error")
MAX_SNAPSHOT_LIMIT = 200

Listener = Callable[[Dict[str, Any]], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def normalize_level(level: Any) -> str:
    value = str(level or "").strip().lower()
    if value in LEVELS:
        return value
    if value == "warning":
        return "warn"
    return "info"


def normalize_timestamp(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        try:
            return float(raw)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp() * 1000
        except ValueError:
            return None
    return None


def _positive_int(value: Any, fallback: Optional[int]) -> Optional[int]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def _level_filter(levels: Union[str, Iterable[str], None]) -> Optional[set]:
    if levels is None:
        return None
    raw = levels.split(",") if isinstance(levels, str) else list(levels)
    picked = {normalize_level(v) for v in raw if str(v).strip()}
    return picked or None


def sanitize_meta(meta: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(meta, dict):
        return None
    clean: Dict[str, Any] = {}
    for key, value in meta.items():
        if isinstance(value, BaseException):
            clean[key] = {
                "message": str(value),
                "status": getattr(value, "status", None),
            }
        else:
            clean[key] = value
    if "token" in clean:
        clean["token"] = "[redacted]"
    return clean


class LogChannel:
    def __init__(self, buffer_size: int = 200, default_source: str = "server") -> None:
        size = _positive_int(buffer_size, None)
        if size is None:
            raise ValueError("LogChannel buffer_size must be a positive integer.")
        self.buffer_size = size
        self.default_source = default_source
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=size)
        self._listeners: List[Listener] = []
        self._sequence = 0

    @property
    def last_sequence(self) -> int:
        return self._sequence

    def push(
        self,
        level: str,
        message: Any,
        meta: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
        timestamp: Any = None,
    ) -> Optional[Dict[str, Any]]:
        text = message if isinstance(message, str) else ("" if message is None else str(message))
        if not text:
            return None
        ts = normalize_timestamp(timestamp)
        self._sequence += 1
        entry = {
            "id": str(uuid.uuid4()),
            "sequence": self._sequence,
            "level": normalize_level(level),
            "message": text,
            "timestamp": int(ts) if ts is not None else _now_ms(),
            "source": str(source) if source else self.default_source,
            "meta": copy.deepcopy(meta) if isinstance(meta, dict) else None,
        }
        self._entries.append(entry)
        for listener in list(self._listeners):
            try:
                listener(copy.deepcopy(entry))
            except Exception as exc:
                print(f"[log-channel] listener failure: {exc}")
        return copy.deepcopy(entry)

    def get_snapshot(
        self,
        limit: Any = None,
        levels: Union[str, Iterable[str], None] = None,
        since: Any = None,
        since_sequence: Any = None,
        search: Optional[str] = None,
        sample: Any = None,
    ) -> List[Dict[str, Any]]:
        cap = min(self.buffer_size, MAX_SNAPSHOT_LIMIT)
        wanted = _positive_int(limit, cap) or cap
        wanted = max(1, min(wanted, cap))
        level_set = _level_filter(levels)
        since_ts = normalize_timestamp(since) if since is not None else None
        since_seq = _positive_int(since_sequence, None) if since_sequence is not None else None
        needle = str(search or "").strip().lower()
        every = _positive_int(sample, 1) or 1

        out: List[Dict[str, Any]] = []
        for entry in self._entries:
            if level_set and entry["level"] not in level_set:
                continue
            if since_ts is not None and entry["timestamp"] < since_ts:
                continue
            if since_seq is not None and entry["sequence"] <= since_seq:
                continue
            if needle and needle not in entry["message"].lower():
                continue
            if every > 1 and entry["sequence"] % every != 0:
                continue
            out.append(entry)
        return [copy.deepcopy(e) for e in out[-wanted:]]

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        if not callable(listener):
            return lambda: None
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def get_stats(self, since: Any = None) -> Dict[str, Any]:
        since_ts = normalize_timestamp(since) if since is not None else None
        by_level = {level: 0 for level in LEVELS}
        total = 0
        first: Optional[int] = None
        last: Optional[int] = None
        for entry in self._entries:
            if since_ts is not None and entry["timestamp"] < since_ts:
                continue
            by_level[entry["level"]] = by_level.get(entry["level"], 0) + 1
            total += 1
            first = entry["timestamp"] if first is None else min(first, entry["timestamp"])
            last = entry["timestamp"] if last is None else max(last, entry["timestamp"])
        return {
            "total": total,
            "byLevel": by_level,
            "firstTimestamp": first,
            "lastTimestamp": last,
        }

    def clear(self) -> None:
        self._entries.clear()
        self._sequence = 0


class ActivityChannel(LogChannel):
    """Activity feed for object-store side effects.

    Every entry carries ``meta.action``; tokens are redacted and exception
    values collapsed to ``{message, status}`` before buffering.
    """

    DEFAULT_SNAPSHOT_LIMIT = 40

    def __init__(self, buffer_size: int = 200) -> None:
        super().__init__(buffer_size=buffer_size, default_source="github-activity")

    def record(
        self,
        action: str,
        message: str,
        level: str = "info",
        meta: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        merged = {"action": str(action or "unknown"), **(meta if isinstance(meta, dict) else {})}
        clean = sanitize_meta(merged)
        lvl = normalize_level(level)
        print(f"[github] {lvl}: {message}")
        return self.push(lvl, message, meta=clean, source=self.default_source)

    def get_snapshot(self, limit: Any = DEFAULT_SNAPSHOT_LIMIT, **filters: Any) -> List[Dict[str, Any]]:
        return super().get_snapshot(limit=limit, **filters)


class ServerLog:
    """Tagged print logger that also feeds the server log channel."""

    def __init__(self, channel: LogChannel, tag: str = "server", debug: bool = False) -> None:
        self.channel = channel
        self.tag = tag
        self.debug_enabled = debug

    def child(self, tag: str) -> "ServerLog":
        return ServerLog(self.channel, tag=tag, debug=self.debug_enabled)

    def _write(self, level: str, message: str, meta: Optional[Dict[str, Any]]) -> None:
        if level != "debug" or self.debug_enabled:
            print(f"[{self.tag}] {message}")
        try:
            self.channel.push(level, message, meta=sanitize_meta(meta), source=self.tag)
        except Exception as exc:
            print(f"[{self.tag}] log channel push failed: {exc}")

    def debug(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        self._write("debug", message, meta)

    def info(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        self._write("info", message, meta)

    def warn(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        self._write("warn", message, meta)

    def error(self, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        self._write("error", message, meta)
