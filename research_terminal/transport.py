import asyncio
import json
import uuid
from typing import Any, Dict, List, Optional, Protocol

from fastapi import WebSocket
from starlette.websockets import WebSocketState

OPEN = "open"
CLOSED = "closed"

CLOSE_NORMAL = 1000
CLOSE_SERVER_ERROR = 1011


class Transport(Protocol):
    ready_state: str

    def send(self, envelope: Dict[str, Any]) -> bool:
        ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        ...


def stamp(envelope: Dict[str, Any]) -> Dict[str, Any]:
    return {**envelope, "serverMessageId": str(uuid.uuid4())}


class MemoryTransport:
    """In-process transport that records outbound envelopes."""

    def __init__(self) -> None:
        self.ready_state = OPEN
        self.sent: List[Dict[str, Any]] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None

    def send(self, envelope: Dict[str, Any]) -> bool:
        if self.ready_state != OPEN:
            return False
        self.sent.append(stamp(envelope))
        return True

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if self.ready_state == CLOSED:
            return
        self.ready_state = CLOSED
        self.close_code = code
        self.close_reason = reason

    def types(self) -> List[str]:
        return [e["type"] for e in self.sent]

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.sent if e["type"] == event_type]


class WebSocketTransport:
    """Queues envelopes synchronously and writes them in order on one task."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.ready_state = OPEN
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            try:
                await self.websocket.send_text(frame)
            except Exception as exc:
                print(f"[ws] send failed; marking transport closed: {exc}")
                self.ready_state = CLOSED
                return

    def send(self, envelope: Dict[str, Any]) -> bool:
        if self.ready_state != OPEN:
            return False
        self._queue.put_nowait(json.dumps(stamp(envelope), ensure_ascii=False, default=str))
        return True

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if self.ready_state == CLOSED and self._writer is None:
            return
        self.ready_state = CLOSED
        self._queue.put_nowait(None)
        if self._writer is not None:
            try:
                await self._writer
            except Exception as exc:
                print(f"[ws] writer task ended with error: {exc}")
            self._writer = None
        if (
            self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        ):
            try:
                await self.websocket.close(code=code, reason=reason)
            except Exception as exc:
                print(f"[ws] close ignored: {exc}")
