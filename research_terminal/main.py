import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect

from research_terminal.config import AppConfig
from research_terminal.context import AppContext
from research_terminal.session import SessionController
from research_terminal.transport import CLOSE_SERVER_ERROR, WebSocketTransport


def create_app(
    config: Optional[AppConfig] = None,
    ctx: Optional[AppContext] = None,
    controller: Optional[SessionController] = None,
) -> FastAPI:
    ctx = ctx or AppContext(config or AppConfig())
    controller = controller or SessionController(ctx)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await ctx.startup()
        sweeper = asyncio.create_task(controller.run_sweeper())
        print(f"[server] Research terminal ready (storage={ctx.config.storage_dir})")
        try:
            yield
        finally:
            sweeper.cancel()
            await controller.shutdown()
            print("[server] Research terminal stopped.")

    app = FastAPI(title="Research Terminal", lifespan=lifespan)
    app.state.ctx = ctx
    app.state.controller = controller

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True}

    @app.get("/api/status")
    def api_status() -> Dict[str, Any]:
        return {
            "sessions": len(controller.sessions),
            "telemetry": ctx.telemetry.snapshot_token_usage_totals(),
            "activity": ctx.activity.get_stats(),
        }

    @app.get("/api/telemetry/{operator}")
    def telemetry_history(operator: str) -> Dict[str, Any]:
        channel = ctx.telemetry.get(operator)
        if channel is None:
            raise HTTPException(status_code=404, detail="Telemetry channel not found")
        return {"events": channel.get_history(), "totals": channel.get_token_usage_totals()}

    @app.websocket("/api/research/ws")
    async def research_ws(websocket: WebSocket) -> None:
        await websocket.accept()
        transport = WebSocketTransport(websocket)
        transport.start()
        session = await controller.connect(transport)
        close_code = 1000
        reason = ""
        try:
            while True:
                raw = await websocket.receive_text()
                controller.receive(session, raw)
        except WebSocketDisconnect:
            reason = "client disconnected"
        except Exception as exc:
            print(f"[ws] Session {session.id} failed: {exc!r}")
            close_code = CLOSE_SERVER_ERROR
            reason = "server error"
        finally:
            await controller.disconnect(session, code=close_code, reason=reason)

    return app


def run() -> None:
    config = AppConfig()
    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    run()
