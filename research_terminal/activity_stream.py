from typing import Any, Callable, Dict, List, Optional

from research_terminal.log_channel import ActivityChannel, MAX_SNAPSHOT_LIMIT

Sender = Callable[[str, Dict[str, Any]], None]

DEFAULT_STREAM_LIMIT = 80


def _clamp_limit(limit: Any, default: int = DEFAULT_STREAM_LIMIT) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        return default
    if value <= 0:
        return default
    return min(value, MAX_SNAPSHOT_LIMIT)


def _normalize_filters(request: Dict[str, Any]) -> Dict[str, Any]:
    filters: Dict[str, Any] = {}
    levels = request.get("levels")
    if levels is not None:
        raw = levels if isinstance(levels, list) else str(levels).split(",")
        picked = [str(v).strip().lower() for v in raw if str(v).strip()]
        if picked:
            filters["levels"] = picked
    search = str(request.get("search") or "").strip()
    if search:
        filters["search"] = search
    since = request.get("since")
    if since is not None:
        try:
            since_val = float(since)
        except (TypeError, ValueError):
            since_val = 0
        if since_val > 0:
            filters["since"] = since_val
    since_sequence = request.get("since_sequence")
    if isinstance(since_sequence, int) and since_sequence > 0:
        filters["since_sequence"] = since_sequence
    sample = request.get("sample")
    if sample is not None:
        try:
            sample_val = int(sample)
        except (TypeError, ValueError):
            sample_val = 0
        if 1 <= sample_val <= 10:
            filters["sample"] = sample_val
    return filters


class ActivityStream:
    """Bridges the shared activity channel to one session's transport."""

    def __init__(
        self,
        channel: ActivityChannel,
        send: Sender,
        snapshot_limit: int = DEFAULT_STREAM_LIMIT,
    ) -> None:
        if not callable(send):
            raise TypeError("ActivityStream requires a send function.")
        self.channel = channel
        self.snapshot_limit = _clamp_limit(snapshot_limit)
        self._send: Optional[Sender] = send
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []
        self._disposed = False
        self.attached = False
        self.last_sequence = 0
        self.last_snapshot_meta: Optional[Dict[str, Any]] = None

    def _safe_send(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._disposed or self._send is None:
            return
        try:
            self._send(event_type, payload)
        except Exception as exc:
            print(f"[activity] send failed: {exc}")

    def _handle_live_entry(self, entry: Dict[str, Any]) -> None:
        if self._disposed or not entry:
            return
        self.last_sequence = max(self.last_sequence, int(entry.get("sequence") or 0))
        self._safe_send("github-activity:event", {"entry": entry})
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as exc:
                print(f"[activity] listener failed: {exc}")

    def emit_snapshot(self, **request: Any) -> List[Dict[str, Any]]:
        limit = _clamp_limit(request.get("limit"), self.snapshot_limit)
        filters = _normalize_filters(request)
        entries = self.channel.get_snapshot(limit=limit, **filters)
        if entries:
            self.last_sequence = max(self.last_sequence, int(entries[-1].get("sequence") or 0))
        meta = {"limit": limit, "count": len(entries), "filters": filters}
        self.last_snapshot_meta = meta
        self._safe_send("github-activity:snapshot", {"entries": entries, "meta": meta})
        return entries

    def emit_stats(self, **request: Any) -> Dict[str, Any]:
        filters = _normalize_filters(request)
        stats = self.channel.get_stats(since=filters.get("since"))
        self._safe_send("github-activity:stats", {"stats": stats, "meta": {"filters": filters}})
        return stats

    def attach(self, **request: Any) -> "ActivityStream":
        if self._disposed:
            raise RuntimeError("ActivityStream has been disposed.")
        if self.attached:
            return self
        self.emit_snapshot(**request)
        self._unsubscribe = self.channel.subscribe(self._handle_live_entry)
        self.attached = True
        return self

    def detach(self) -> None:
        if self._unsubscribe is not None:
            try:
                self._unsubscribe()
            except Exception as exc:
                print(f"[activity] unsubscribe failed: {exc}")
        self._unsubscribe = None
        self.attached = False

    def dispose(self) -> None:
        if self._disposed:
            return
        self.detach()
        self._listeners.clear()
        self._send = None
        self._disposed = True

    @property
    def disposed(self) -> bool:
        return self._disposed

    def update_sender(self, send: Optional[Sender]) -> None:
        self._send = send if callable(send) else None

    def on_entry(self, listener: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        if not callable(listener):
            return lambda: None
        self._listeners.append(listener)

        def dispose_listener() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return dispose_listener

    def handle_request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        command = str(request.get("command") or "snapshot").strip().lower()
        if command == "snapshot":
            entries = self.emit_snapshot(**request)
            return {"ok": True, "count": len(entries)}
        if command == "stats":
            return {"ok": True, "stats": self.emit_stats(**request)}
        if command == "replay":
            since_sequence = request.get("since_sequence")
            if not isinstance(since_sequence, int):
                since_sequence = self.last_sequence - self.snapshot_limit
            since_sequence = max(0, since_sequence)
            limit = _clamp_limit(request.get("limit"), MAX_SNAPSHOT_LIMIT)
            filters = _normalize_filters(request)
            filters.pop("since_sequence", None)
            matched = self.channel.get_snapshot(
                limit=MAX_SNAPSHOT_LIMIT, since_sequence=since_sequence or None, **filters
            )
            # oldest first so the client can resume from the last replayed sequence
            replayed = matched[:limit]
            truncated = len(matched) > len(replayed)
            if replayed and not filters and int(replayed[0].get("sequence") or 0) > since_sequence + 1:
                truncated = True
            self._safe_send(
                "github-activity:replay",
                {
                    "entries": replayed,
                    "meta": {
                        "requestedSince": since_sequence,
                        "limit": limit,
                        "count": len(replayed),
                        "truncated": truncated,
                    },
                },
            )
            if replayed:
                self.last_sequence = max(self.last_sequence, int(replayed[-1].get("sequence") or 0))
            return {"ok": True, "count": len(replayed)}
        if command == "export":
            entries = self.channel.get_snapshot(limit=_clamp_limit(request.get("limit"), MAX_SNAPSHOT_LIMIT))
            self._safe_send("github-activity:export-ready", {"entries": entries, "meta": {"count": len(entries)}})
            return {"ok": True, "count": len(entries)}
        return {"ok": False, "error": f"Unsupported command '{command}'."}
