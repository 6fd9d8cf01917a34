import math
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

Sender = Callable[[str, Dict[str, Any]], None]

THROTTLED = "throttled"

STATUS = "research-status"
THOUGHT = "research-thought"
PROGRESS = "research-progress"
COMPLETE = "research-complete"
MEMORY = "research-memory"
SUGGESTIONS = "research-suggestions"
TOKEN_USAGE = "research-token-usage"

_MAX_MEMORY_RECORDS = 6
_MAX_SUGGESTIONS = 6
_MAX_TAGS = 5


def _now_ms() -> int:
    return int(time.time() * 1000)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _truncate(value: Any, limit: int) -> str:
    text = str(value or "").strip()
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 1)].rstrip() + "…"


def _opt_str(value: Any) -> Optional[str]:
    text = str(value).strip() if value is not None else ""
    return text or None


def _finite(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def _non_negative_int(value: Any, default: Optional[int] = 0) -> Optional[int]:
    num = _finite(value)
    if num is None or num < 0:
        return default
    return int(num)


def _score(value: Any) -> Optional[float]:
    num = _finite(value)
    if num is None:
        return None
    return min(1.0, max(0.0, num))


def _epoch_ms(value: Any) -> Optional[int]:
    num = _finite(value)
    if num is not None:
        return int(num)
    if isinstance(value, str) and value.strip():
        try:
            return int(datetime.fromisoformat(value.strip().replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            return None
    return None


def _tags(value: Any) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    out: List[str] = []
    for tag in value:
        text = str(tag or "").strip()
        if text:
            out.append(text)
        if len(out) >= _MAX_TAGS:
            break
    return out


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data.get(key)
    return None


def normalize_status(data: Dict[str, Any]) -> Dict[str, Any]:
    progress = _finite(data.get("progress"))
    meta = data.get("meta")
    return {
        "stage": str(data.get("stage") or "update"),
        "message": str(data.get("message") or ""),
        "detail": _opt_str(data.get("detail")),
        "progress": progress,
        "meta": dict(meta) if isinstance(meta, dict) else {},
    }


def normalize_thought(data: Any) -> Dict[str, Any]:
    if isinstance(data, str):
        data = {"text": data}
    if not isinstance(data, dict):
        data = {}
    meta = data.get("meta")
    return {
        "text": str(data.get("text") or "").strip(),
        "source": _opt_str(data.get("source")),
        "stage": _opt_str(data.get("stage")),
        "meta": dict(meta) if isinstance(meta, dict) else {},
    }


def normalize_progress(data: Dict[str, Any]) -> Dict[str, Any]:
    completed = _non_negative_int(_first(data, "completed", "completedQueries"))
    total = _non_negative_int(_first(data, "total", "totalQueries"))
    percent: Optional[int] = None
    if total:
        percent = min(100, int(math.floor(completed * 100.0 / total + 0.5)))
    return {
        "completed": completed,
        "total": total,
        "status": _opt_str(data.get("status")),
        "message": _opt_str(_first(data, "message", "currentAction")),
        "currentDepth": _non_negative_int(data.get("currentDepth"), None),
        "totalDepth": _non_negative_int(data.get("totalDepth"), None),
        "currentBreadth": _non_negative_int(data.get("currentBreadth"), None),
        "totalBreadth": _non_negative_int(data.get("totalBreadth"), None),
        "percentComplete": percent,
    }


def _normalize_memory_record(record: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(record, dict):
        return None
    return {
        "id": _truncate(record.get("id"), 80),
        "layer": _opt_str(record.get("layer")),
        "preview": _truncate(_first(record, "preview", "content", "text"), 260),
        "tags": _tags(record.get("tags")),
        "source": _truncate(record.get("source"), 120),
        "score": _score(record.get("score")),
        "timestamp": _epoch_ms(record.get("timestamp")),
    }


def normalize_memory(data: Dict[str, Any]) -> Dict[str, Any]:
    stats = data.get("stats") if isinstance(data.get("stats"), dict) else {}
    records_raw = data.get("records") if isinstance(data.get("records"), list) else []
    records = [r for r in (_normalize_memory_record(x) for x in records_raw) if r]
    return {
        "query": _truncate(data.get("query"), 280),
        "stats": {
            key: _non_negative_int(stats.get(key))
            for key in ("stored", "retrieved", "validated", "summarized", "ephemeralCount", "validatedCount")
        },
        "records": records[:_MAX_MEMORY_RECORDS],
    }


def normalize_suggestions(data: Dict[str, Any]) -> Dict[str, Any]:
    raw = data.get("suggestions") if isinstance(data.get("suggestions"), list) else []
    items: List[Dict[str, Any]] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        prompt = _truncate(item.get("prompt"), 240)
        if not prompt:
            continue
        items.append(
            {
                "prompt": prompt,
                "focus": _truncate(item.get("focus"), 120),
                "layer": _opt_str(item.get("layer")),
                "memoryId": _truncate(item.get("memoryId"), 80),
                "tags": _tags(item.get("tags")),
                "score": _score(item.get("score")),
            }
        )
        if len(items) >= _MAX_SUGGESTIONS:
            break
    return {
        "source": str(data.get("source") or "memory").strip().lower() or "memory",
        "generatedAt": _epoch_ms(data.get("generatedAt")) or _now_ms(),
        "suggestions": items,
    }


def normalize_complete(data: Dict[str, Any]) -> Dict[str, Any]:
    learnings = data.get("learnings")
    sources = data.get("sources")
    meta = data.get("meta")
    duration = _finite(data.get("durationMs"))
    return {
        "success": bool(data.get("success")),
        "durationMs": int(duration) if duration is not None else None,
        "learnings": len(learnings) if isinstance(learnings, (list, tuple, set)) else _non_negative_int(learnings),
        "sources": len(sources) if isinstance(sources, (list, tuple, set)) else _non_negative_int(sources),
        "suggestedFilename": _opt_str(data.get("suggestedFilename")),
        "error": _opt_str(data.get("error")),
        "summary": _opt_str(data.get("summary")),
        "meta": dict(meta) if isinstance(meta, dict) else {},
    }


def normalize_token_usage(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    prompt = _finite(_first(data, "promptTokens", "prompt_tokens"))
    completion = _finite(_first(data, "completionTokens", "completion_tokens"))
    total = _finite(_first(data, "totalTokens", "total_tokens"))
    valid = [v for v in (prompt, completion, total) if v is not None and v >= 0]
    if not valid:
        return None
    prompt_i = int(prompt) if prompt is not None and prompt >= 0 else 0
    completion_i = int(completion) if completion is not None and completion >= 0 else 0
    total_i = int(total) if total is not None and total >= 0 else prompt_i + completion_i
    meta = data.get("meta")
    return {
        "stage": str(data.get("stage") or "unknown"),
        "promptTokens": prompt_i,
        "completionTokens": completion_i,
        "totalTokens": total_i,
        "model": _opt_str(data.get("model")),
        "meta": dict(meta) if isinstance(meta, dict) else {},
    }


def _empty_totals() -> Dict[str, Any]:
    return {
        "promptTokens": 0,
        "completionTokens": 0,
        "totalTokens": 0,
        "events": 0,
        "perStage": {},
        "updatedAt": None,
    }


class TelemetryChannel:
    def __init__(
        self,
        send: Optional[Sender] = None,
        buffer_size: int = 120,
        status_throttle_ms: int = 350,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.buffer_size = max(1, int(buffer_size))
        self.status_throttle_ms = max(0, int(status_throttle_ms))
        self._clock = clock
        self._send: Optional[Sender] = send if callable(send) else None
        self._history: Deque[Dict[str, Any]] = deque(maxlen=self.buffer_size)
        self._last_accepted: Dict[str, Optional[float]] = {STATUS: None, PROGRESS: None}
        self._totals = _empty_totals()

    def _throttled(self, kind: str) -> bool:
        now = self._clock() * 1000.0
        last = self._last_accepted.get(kind)
        if last is not None and now - last < self.status_throttle_ms:
            return True
        self._last_accepted[kind] = now
        return False

    def _push(self, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        event = {
            "id": str(uuid.uuid4()),
            "type": event_type,
            "data": data,
            "timestamp": _now_ms(),
        }
        self._history.append(event)
        if self._send is not None:
            try:
                self._send(event_type, self._wire(event))
            except Exception as exc:
                print(f"[telemetry] send failed for {event_type}: {exc}")
        return event

    @staticmethod
    def _wire(event: Dict[str, Any]) -> Dict[str, Any]:
        return {**event["data"], "timestamp": event["timestamp"], "eventId": event["id"]}

    def emit_status(self, status: Optional[Dict[str, Any]] = None, force: bool = False, **kwargs: Any) -> Any:
        data = normalize_status({**(status or {}), **kwargs})
        if self._throttled(STATUS) and not force:
            return THROTTLED
        return self._push(STATUS, data)

    def emit_thought(self, thought: Any = None, **kwargs: Any) -> Optional[Dict[str, Any]]:
        payload = thought if isinstance(thought, str) else {**(thought or {}), **kwargs}
        data = normalize_thought(payload)
        if not data["text"]:
            return None
        return self._push(THOUGHT, data)

    def emit_progress(self, progress: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Any:
        data = normalize_progress({**(progress or {}), **kwargs})
        if self._throttled(PROGRESS):
            return THROTTLED
        return self._push(PROGRESS, data)

    def emit_complete(self, summary: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Dict[str, Any]:
        return self._push(COMPLETE, normalize_complete({**(summary or {}), **kwargs}))

    def emit_memory_context(self, context: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Dict[str, Any]:
        return self._push(MEMORY, normalize_memory({**(context or {}), **kwargs}))

    def emit_suggestions(self, payload: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Dict[str, Any]:
        return self._push(SUGGESTIONS, normalize_suggestions({**(payload or {}), **kwargs}))

    def emit_token_usage(self, usage: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Optional[Dict[str, Any]]:
        data = normalize_token_usage({**(usage or {}), **kwargs})
        if data is None:
            return None
        self._record_totals(data)
        return self._push(TOKEN_USAGE, data)

    def _record_totals(self, data: Dict[str, Any]) -> None:
        totals = self._totals
        for key in ("promptTokens", "completionTokens", "totalTokens"):
            totals[key] += data[key]
        totals["events"] += 1
        stage = totals["perStage"].setdefault(
            data["stage"],
            {"promptTokens": 0, "completionTokens": 0, "totalTokens": 0, "events": 0},
        )
        for key in ("promptTokens", "completionTokens", "totalTokens"):
            stage[key] += data[key]
        stage["events"] += 1
        totals["updatedAt"] = _now_iso()

    def replay(self, sender: Optional[Sender] = None, events: Optional[Iterable[Dict[str, Any]]] = None) -> int:
        target = sender if callable(sender) else self._send
        if target is None:
            return 0
        sent = 0
        for event in list(events if events is not None else self._history):
            try:
                target(event["type"], self._wire(event))
            except Exception as exc:
                print(f"[telemetry] replay stopped after {sent} events: {exc}")
                break
            sent += 1
        return sent

    def update_sender(self, send: Optional[Sender]) -> None:
        self._send = send if callable(send) else None

    def release_sender(self, send: Optional[Sender]) -> bool:
        if send is not None and self._send is send:
            self._send = None
            return True
        return False

    @property
    def has_sender(self) -> bool:
        return self._send is not None

    def clear_history(self) -> None:
        self._history.clear()
        self._last_accepted = {STATUS: None, PROGRESS: None}

    def get_history(self) -> List[Dict[str, Any]]:
        return [{**e, "data": dict(e["data"])} for e in self._history]

    def get_token_usage_totals(self) -> Dict[str, Any]:
        totals = self._totals
        return {
            **{k: totals[k] for k in ("promptTokens", "completionTokens", "totalTokens", "events", "updatedAt")},
            "perStage": {k: dict(v) for k, v in totals["perStage"].items()},
        }

    def reset_token_usage_totals(self) -> None:
        self._totals = _empty_totals()


class TelemetryRegistry:
    """Maps operator keys to their telemetry channels."""

    def __init__(self, buffer_size: int = 120, status_throttle_ms: int = 350) -> None:
        self.buffer_size = buffer_size
        self.status_throttle_ms = status_throttle_ms
        self._channels: Dict[str, TelemetryChannel] = {}

    @staticmethod
    def _key(key: Optional[str]) -> str:
        return str(key or "").strip() or "operator"

    def get(self, key: Optional[str]) -> Optional[TelemetryChannel]:
        return self._channels.get(self._key(key))

    def ensure(self, key: Optional[str], send: Optional[Sender], replay: bool = True) -> Tuple[TelemetryChannel, bool]:
        name = self._key(key)
        channel = self._channels.get(name)
        if channel is None:
            channel = TelemetryChannel(
                send=send,
                buffer_size=self.buffer_size,
                status_throttle_ms=self.status_throttle_ms,
            )
            self._channels[name] = channel
            return channel, True
        history = channel.get_history()
        channel.update_sender(send)
        channel.emit_status(
            {"stage": "reconnected", "message": "Telemetry channel resumed after reconnect."},
            force=True,
        )
        if replay and history:
            channel.replay(send, events=history)
        return channel, False

    def remove(self, key: Optional[str]) -> None:
        self._channels.pop(self._key(key), None)

    def keys(self) -> List[str]:
        return list(self._channels.keys())

    def snapshot_token_usage_totals(self) -> Dict[str, Any]:
        combined = _empty_totals()
        operators: Dict[str, Any] = {}
        latest: Optional[str] = None
        for name, channel in self._channels.items():
            totals = channel.get_token_usage_totals()
            operators[name] = totals
            for key in ("promptTokens", "completionTokens", "totalTokens", "events"):
                combined[key] += totals[key]
            for stage, sub in totals["perStage"].items():
                bucket = combined["perStage"].setdefault(
                    stage, {"promptTokens": 0, "completionTokens": 0, "totalTokens": 0, "events": 0}
                )
                for key in bucket:
                    bucket[key] += sub[key]
            if totals["updatedAt"] and (latest is None or totals["updatedAt"] > latest):
                latest = totals["updatedAt"]
        combined["updatedAt"] = latest
        combined["operators"] = operators
        return combined
