import asyncio
import json
import secrets
import uuid
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from research_terminal import commands
from research_terminal.activity_stream import ActivityStream
from research_terminal.context import AppContext
from research_terminal.errors import (
    AuthError,
    PromptReplaced,
    PromptTimeout,
    TerminalError,
    TransportClosed,
    ValidationError,
)
from research_terminal.models import (
    ActivityCommandMessage,
    ChatMessage,
    CommandMessage,
    HandlerOutcome,
    InputMessage,
    PingMessage,
    StatusRefreshMessage,
    UserRecord,
    inbound_adapter,
)
from research_terminal.transport import CLOSE_NORMAL, CLOSED, Transport
from research_terminal.user_store import API_SERVICES, public_user

TELEMETRY_KEY = "operator"
LOG_SNAPSHOT_LIMIT = 120
ACTIVITY_SNAPSHOT_LIMIT = 80
WELCOME = "Welcome to the research terminal!"
SECRET_COMMANDS = {"keys", "login", "password-change", "github-config"}


class PendingPrompt:
    def __init__(
        self,
        future: "asyncio.Future[str]",
        message: str,
        is_password: bool,
        context: Optional[str],
        data: Any,
        previous_mode: str,
    ) -> None:
        self.future = future
        self.message = message
        self.is_password = is_password
        self.context = context
        self.data = data
        self.previous_mode = previous_mode
        self.timer: Optional[asyncio.TimerHandle] = None


class Session:
    """State owned by one open transport."""

    def __init__(self, transport: Transport, now: float, csrf_ttl_sec: int) -> None:
        self.id = str(uuid.uuid4())
        self.transport = transport
        self.user: UserRecord = public_user()
        self.password: Optional[str] = None
        self.mode = "command"
        self.created_at = now
        self.last_activity = now
        self.chat_history: List[Dict[str, str]] = []
        self.chat_llm: Any = None
        self.pending_prompt: Optional[PendingPrompt] = None
        self.cancel_token: Any = None
        self.csrf_token = secrets.token_hex(32)
        self.csrf_issued_at = now
        self.csrf_expires_at = now + csrf_ttl_sec
        self.telemetry: Any = None
        self.telemetry_sender: Optional[Callable[[str, Dict[str, Any]], None]] = None
        self.activity_stream: Optional[ActivityStream] = None
        self.activity_disposer: Optional[Callable[[], None]] = None
        self.log_unsubscribe: Optional[Callable[[], None]] = None
        self.last_activity_entry_ts: Optional[int] = None
        self.status_task: Optional[asyncio.Task] = None
        self.tasks: Set[asyncio.Task] = set()
        self.lock = asyncio.Lock()
        self.closed = False
        # persisted through the session state store
        self.current_research_result: Optional[str] = None
        self.current_research_filename: Optional[str] = None
        self.current_research_summary: Optional[str] = None
        self.current_research_query: Optional[str] = None
        self.session_model: Optional[str] = None
        self.session_character: Optional[str] = None
        self.memory_enabled = False
        self.memory_depth: Optional[int] = None
        self.memory_github_enabled = False


class SessionController:
    """Routes inbound envelopes, owns prompts, and tears sessions down."""

    def __init__(
        self,
        ctx: AppContext,
        prompt_timeout_sec: Optional[float] = None,
        status_refresh_interval_sec: Optional[float] = None,
    ) -> None:
        self.ctx = ctx
        self.log = ctx.log.child("session")
        self.cleanup_log = ctx.log.child("cleanup")
        self.prompt_timeout_sec = float(
            ctx.config.prompt_timeout_sec if prompt_timeout_sec is None else prompt_timeout_sec
        )
        self.status_refresh_interval_sec = float(
            ctx.config.status_refresh_interval_sec if status_refresh_interval_sec is None else status_refresh_interval_sec
        )
        self.sessions: Dict[str, Session] = {}

    def _now(self) -> float:
        return self.ctx.clock()

    # -- outbound ----------------------------------------------------------

    def send(self, session: Session, envelope: Dict[str, Any]) -> bool:
        if session.closed or session.transport.ready_state == CLOSED:
            return False
        return session.transport.send(envelope)

    def output(self, session: Session, text: Any) -> None:
        self.send(session, {"type": "output", "data": text if isinstance(text, str) else str(text)})

    def error(self, session: Session, message: str, enable_input: bool = True) -> None:
        self.send(session, {"type": "error", "error": message})
        if enable_input:
            self.enable_input(session)

    def enable_input(self, session: Session) -> None:
        self.send(session, {"type": "enable_input"})

    def disable_input(self, session: Session) -> None:
        self.send(session, {"type": "disable_input"})

    async def persist_session(self, session: Session) -> None:
        try:
            await self.ctx.session_store.persist_from_ref(session)
        except OSError as exc:
            self.log.warn(f"Failed to persist session snapshot: {exc}")

    async def build_status_summary(self, session: Session) -> Dict[str, Any]:
        user = session.user
        keys = {service: False for service in (*API_SERVICES, "github")}
        github = {"owner": None, "repo": None, "branch": None}
        if user.role != "public":
            for service in keys:
                keys[service] = await self.ctx.users.has_api_key(user.username, service)
            try:
                record = await self.ctx.users.get_user_data(user.username)
                github = {
                    "owner": record.github_owner or self.ctx.github_defaults.get("owner"),
                    "repo": record.github_repo or self.ctx.github_defaults.get("repo"),
                    "branch": record.github_branch or self.ctx.github_defaults.get("branch") or "main",
                }
            except TerminalError as exc:
                self.log.warn(f"Status summary could not read user record: {exc}")
        return {
            "user": user.username,
            "role": user.role,
            "mode": session.mode,
            "keys": keys,
            "github": github,
            "telemetry": self.ctx.telemetry.snapshot_token_usage_totals(),
            "sessions": len(self.sessions),
        }

    async def send_status_summary(self, session: Session, reason: str = "refresh") -> Dict[str, Any]:
        summary = await self.build_status_summary(session)
        self.send(session, {"type": "status-summary", "reason": reason, "data": summary})
        return summary

    async def _status_refresh_loop(self, session: Session) -> None:
        while not session.closed:
            await asyncio.sleep(self.status_refresh_interval_sec)
            if session.closed:
                return
            try:
                await self.send_status_summary(session, reason="interval")
            except Exception as exc:
                self.log.warn(f"Status refresh failed: {exc}")

    # -- lifecycle ---------------------------------------------------------

    async def connect(self, transport: Transport) -> Session:
        session = Session(transport, now=self._now(), csrf_ttl_sec=self.ctx.config.csrf_ttl_sec)
        state = await self.ctx.session_store.load()
        self.ctx.session_store.apply_state_to_ref(session, state)
        self.sessions[session.id] = session
        self.log.info(f"Session {session.id} connected.")

        self.send(session, {"type": "connection", "connected": True, "sessionId": session.id})
        self.send(session, {"type": "login_success", "username": session.user.username, "role": session.user.role})
        self.output(session, WELCOME)
        if session.current_research_result:
            self.output(session, "Previous research result restored from last session. Use /storage save to keep it.")
        self.send(session, {"type": "mode_change", "mode": "command", "prompt": "> "})
        self.send(session, {"type": "csrf_token", "value": session.csrf_token})

        logs = self.ctx.log_channel.get_snapshot(limit=LOG_SNAPSHOT_LIMIT)
        if logs:
            self.send(session, {"type": "log-snapshot", "logs": logs})

        def send_event(event_type: str, payload: Dict[str, Any]) -> None:
            self.send(session, {"type": event_type, "data": payload})

        stream = ActivityStream(self.ctx.activity, send_event, snapshot_limit=ACTIVITY_SNAPSHOT_LIMIT)
        stream.attach(limit=ACTIVITY_SNAPSHOT_LIMIT)
        session.activity_stream = stream
        session.activity_disposer = stream.on_entry(
            lambda entry: setattr(session, "last_activity_entry_ts", entry.get("timestamp"))
        )

        session.telemetry_sender = send_event
        channel, is_new = self.ctx.telemetry.ensure(TELEMETRY_KEY, send_event, replay=True)
        session.telemetry = channel
        if is_new:
            channel.emit_status({"stage": "connected", "message": "Research telemetry channel ready."}, force=True)

        session.log_unsubscribe = self.ctx.log_channel.subscribe(
            lambda entry: self.send(session, {"type": "log-event", "data": entry})
        )
        self.enable_input(session)
        await self.send_status_summary(session, reason="initial")
        if self.status_refresh_interval_sec > 0:
            session.status_task = asyncio.create_task(self._status_refresh_loop(session))
        return session

    async def disconnect(self, session: Session, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if session.closed:
            return
        session.closed = True
        self.sessions.pop(session.id, None)
        pending = session.pending_prompt
        if pending is not None:
            self._settle(session, pending, exc=TransportClosed("Connection closed."))
        if session.cancel_token is not None:
            session.cancel_token.cancel("cancelled")
        if session.status_task is not None:
            session.status_task.cancel()
        if session.telemetry is not None:
            session.telemetry.release_sender(session.telemetry_sender)
        if session.activity_disposer is not None:
            session.activity_disposer()
        if session.activity_stream is not None:
            session.activity_stream.dispose()
        if session.log_unsubscribe is not None:
            session.log_unsubscribe()
        await self.persist_session(session)
        session.password = None
        session.chat_llm = None
        session.current_research_result = None
        await session.transport.close(code, reason)
        self.log.info(f"Session {session.id} closed{': ' + reason if reason else ''}.")

    async def expire(self, session: Session) -> None:
        self.send(session, {"type": "session-expired", "message": "Session expired due to inactivity."})
        await self.disconnect(session, code=CLOSE_NORMAL, reason="Session expired")

    async def sweep(self) -> int:
        now = self._now()
        timeout = self.ctx.config.session_inactivity_timeout_sec
        stale = [s for s in list(self.sessions.values()) if now - s.last_activity > timeout]
        for session in stale:
            self.cleanup_log.info(f"Expiring inactive session {session.id}.")
            await self.expire(session)
        return len(stale)

    async def run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self.ctx.config.session_sweep_interval_sec)
            try:
                await self.sweep()
            except Exception as exc:
                self.cleanup_log.error(f"Session sweep failed: {exc}")

    async def shutdown(self) -> None:
        for session in list(self.sessions.values()):
            await self.disconnect(session, reason="Server shutting down")

    # -- prompts -----------------------------------------------------------

    def _settle(self, session: Session, pending: PendingPrompt, value: Optional[str] = None, exc: Optional[Exception] = None) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
        if session.pending_prompt is pending:
            session.pending_prompt = None
            session.mode = pending.previous_mode
        if pending.future.done():
            return
        if exc is not None:
            pending.future.set_exception(exc)
        else:
            pending.future.set_result(value or "")

    def _expire_prompt(self, session: Session, pending: PendingPrompt) -> None:
        if session.pending_prompt is pending:
            self.log.warn(f"Prompt timed out for session {session.id}.")
            self._settle(session, pending, exc=PromptTimeout("Prompt timed out."))

    async def prompt(
        self,
        session: Session,
        message: str,
        is_password: bool = False,
        context: Optional[str] = None,
        data: Any = None,
        timeout_sec: Optional[float] = None,
    ) -> str:
        if session.closed:
            raise TransportClosed("Connection closed.")
        previous = session.pending_prompt
        previous_mode = session.mode
        if previous is not None:
            self.log.warn("New prompt initiated while previous prompt pending.")
            previous_mode = previous.previous_mode
            self._settle(session, previous, exc=PromptReplaced("New prompt initiated, cancelling previous one."))
        loop = asyncio.get_running_loop()
        pending = PendingPrompt(loop.create_future(), message, is_password, context, data, previous_mode)
        timeout = self.prompt_timeout_sec if timeout_sec is None else timeout_sec
        pending.timer = loop.call_later(timeout, self._expire_prompt, session, pending)
        session.pending_prompt = pending
        session.mode = "prompt"
        self.send(session, {"type": "prompt", "data": message, "isPassword": is_password, "context": context})
        self.enable_input(session)
        return await pending.future

    def handle_input(self, session: Session, value: Any) -> bool:
        session.last_activity = self._now()
        pending = session.pending_prompt
        if pending is None:
            self.log.warn("Received input when no prompt was pending.")
            self.error(session, "Received unexpected input. No prompt was active.")
            return False
        shown = "******" if pending.is_password else str(value)[:80]
        self.log.debug(f"Prompt answered (context={pending.context or 'none'}): {shown}")
        self._settle(session, pending, value=str(value or ""))
        return True

    # -- inbound -----------------------------------------------------------

    def parse(self, raw: Any) -> Any:
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError as exc:
                raise ValidationError("Malformed message: expected a JSON object.") from exc
        if not isinstance(raw, dict) or not raw.get("type"):
            raise ValidationError("Malformed message: missing 'type'.")
        try:
            return inbound_adapter.validate_python(raw)
        except PydanticValidationError as exc:
            raise ValidationError(f"Unsupported or invalid message of type '{raw.get('type')}'.") from exc

    def receive(self, session: Session, raw: Any) -> Optional[asyncio.Task]:
        """Entry point for the transport read loop.

        ``input``, ``ping`` and a cancel of a running research are handled
        immediately so that the busy handler can be resolved; everything else
        is queued behind the session lock and runs in receipt order.
        """
        try:
            message = self.parse(raw)
        except ValidationError as exc:
            self.error(session, str(exc))
            return None
        if isinstance(message, InputMessage):
            self.handle_input(session, message.value)
            return None
        if isinstance(message, PingMessage):
            self.send(session, {"type": "pong"})
            return None
        if isinstance(message, CommandMessage) and self._cancel_running_research(session, message):
            return None
        task = asyncio.create_task(self._process(session, message))
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)
        return task

    def _cancel_running_research(self, session: Session, message: CommandMessage) -> bool:
        token = session.cancel_token
        if token is None or token.cancelled:
            return False
        name = commands.parse_command_message(message.command, message.args)["command_name"]
        if name not in commands.CANCEL_COMMANDS:
            return False
        session.last_activity = self._now()
        self.log.info(f"Cancelling research for {session.user.username} on /{name}.")
        token.cancel("cancelled")
        self.output(session, "Cancelling research...")
        return True

    async def handle_message(self, session: Session, raw: Any) -> None:
        task = self.receive(session, raw)
        if task is not None:
            await task

    async def _process(self, session: Session, message: Any) -> None:
        async with session.lock:
            if session.closed:
                return
            session.last_activity = self._now()
            if isinstance(message, StatusRefreshMessage):
                await self.send_status_summary(session, reason="request")
                return
            if isinstance(message, ActivityCommandMessage):
                self._handle_activity_command(session, message)
                return
            await self._run_handler(session, message)

    def _handle_activity_command(self, session: Session, message: ActivityCommandMessage) -> None:
        stream = session.activity_stream
        if stream is None:
            return
        request = {"command": message.command, **message.filters()}
        result = stream.handle_request(request)
        if not result.get("ok"):
            error = result.get("error") or "GitHub activity request failed."
            self.send(session, {"type": "github-activity:error", "data": {"error": error}})
            self.error(session, error)

    def _check_csrf(self, session: Session, message: CommandMessage) -> None:
        token = message.csrf_token
        if token is None and not self.ctx.config.csrf_required:
            return
        if not token or not secrets.compare_digest(str(token), session.csrf_token):
            raise ValidationError("Invalid CSRF token.")
        if self._now() > session.csrf_expires_at:
            raise ValidationError("CSRF token expired. Reconnect to obtain a new one.")

    async def _run_handler(self, session: Session, message: Any) -> None:
        if session.pending_prompt is None:
            self.disable_input(session)
        keep_disabled = False
        try:
            if isinstance(message, ChatMessage):
                outcome = await commands.handle_chat_message(self, session, message.message)
            else:
                parsed = commands.parse_command_message(message.command, message.args)
                name = parsed["command_name"]
                shown = f"/{name}" if name in SECRET_COMMANDS else f"/{name} {' '.join(parsed['positional_args'])}".rstrip()
                self.log.info(f"Executing {shown} for {session.user.username}")
                cmd = commands.COMMANDS.get(name)
                if cmd is not None and cmd.mutating:
                    self._check_csrf(session, message)
                req = commands.CommandRequest(
                    controller=self,
                    session=session,
                    name=name,
                    positional_args=parsed["positional_args"],
                    flags=parsed["flags"],
                    password=message.password,
                )
                outcome = await commands.dispatch(req)
            keep_disabled = self._apply_outcome(session, outcome)
        except TerminalError as exc:
            self.log.warn(f"{exc.__class__.__name__}: {exc}")
            if isinstance(exc, AuthError):
                session.password = None
            self.send(session, {"type": "error", "error": str(exc)})
        except Exception as exc:
            self.log.error(f"Unhandled error in session {session.id}: {exc!r}")
            self.send(session, {"type": "error", "error": "Internal server error."})
        if not keep_disabled and session.pending_prompt is None:
            self.enable_input(session)

    def _apply_outcome(self, session: Session, outcome: HandlerOutcome) -> bool:
        if outcome.user is not None:
            session.user = outcome.user.model_copy()
        if outcome.mode_change is not None:
            self.send(
                session,
                {"type": "mode_change", "mode": outcome.mode_change.mode, "prompt": outcome.mode_change.prompt},
            )
        if outcome.message:
            self.output(session, outcome.message)
        return outcome.keep_disabled
