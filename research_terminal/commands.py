import shlex
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from research_pipeline import (
    DEFAULT_BREADTH,
    DEFAULT_CHAT_CHARACTER,
    DEFAULT_CHAT_MODEL,
    DEFAULT_DEPTH,
    DEFAULT_RESEARCH_CHARACTER,
    DEFAULT_RESEARCH_MODEL,
    CancelToken,
    ResearchEngine,
    clamp_int,
    query_from_chat_history,
)
from research_terminal.errors import (
    AuthError,
    MissingApiKey,
    NotConfigured,
    ProviderError,
    ResearchFailed,
    ValidationError,
)
from research_terminal.memory import DEFAULT_RECALL_LIMIT, MAX_FOLLOW_UP_QUERIES, prepare_memory_context
from research_terminal.models import HandlerOutcome, ModeChange
from research_terminal.user_store import API_SERVICES, public_user

DEFAULT_MODELS = {"chat": DEFAULT_CHAT_MODEL, "research": DEFAULT_RESEARCH_MODEL}
DEFAULT_CHARACTERS = {"chat": DEFAULT_CHAT_CHARACTER, "research": DEFAULT_RESEARCH_CHARACTER}
POST_RESEARCH_ACTIONS = ("download", "upload", "keep", "discard")
CANCEL_COMMANDS = ("cancel", "exit")
CHAT_HISTORY_LIMIT = 40


def split_flags(tokens: List[str]) -> Tuple[List[str], Dict[str, Any]]:
    positional: List[str] = []
    flags: Dict[str, Any] = {}
    for token in tokens:
        if token.startswith("--") and len(token) > 2:
            name, sep, value = token[2:].partition("=")
            flags[name.strip().lower()] = value if sep else True
        else:
            positional.append(token)
    return positional, flags


def parse_command_args(text: str) -> Dict[str, Any]:
    raw = str(text or "").strip()
    try:
        tokens = shlex.split(raw)
    except ValueError:
        tokens = raw.split()
    if not tokens:
        return {"command_name": "", "positional_args": [], "flags": {}}
    name = tokens[0].lstrip("/").strip().lower()
    positional, flags = split_flags(tokens[1:])
    return {"command_name": name, "positional_args": positional, "flags": flags}


def parse_command_message(command: str, args: List[str]) -> Dict[str, Any]:
    text = str(command or "").strip()
    parsed = parse_command_args(text)
    positional, flags = split_flags([str(a) for a in (args or [])])
    parsed["positional_args"].extend(positional)
    parsed["flags"].update(flags)
    return parsed


@dataclass
class CommandRequest:
    controller: Any
    session: Any
    name: str
    positional_args: List[str] = field(default_factory=list)
    flags: Dict[str, Any] = field(default_factory=dict)
    password: Optional[str] = None

    @property
    def ctx(self) -> Any:
        return self.controller.ctx

    def output(self, text: str) -> None:
        self.controller.output(self.session, text)

    async def prompt(self, message: str, is_password: bool = False, context: Optional[str] = None, data: Any = None) -> str:
        return await self.controller.prompt(self.session, message, is_password=is_password, context=context, data=data)

    def flag_str(self, name: str) -> Optional[str]:
        value = self.flags.get(name)
        if value is None or value is True:
            return None
        return str(value)


Handler = Callable[[CommandRequest], Awaitable[HandlerOutcome]]


@dataclass(frozen=True)
class CommandSpec:
    name: str
    handler: Handler
    usage: str
    public: bool = False
    mutating: bool = False


# ---------------------------------------------------------------------------
# shared helpers
# ---------------------------------------------------------------------------


def _require_login(req: CommandRequest) -> None:
    if req.session.user.role == "public":
        raise AuthError(f"Login required for /{req.name}. Use /login <username>.")


async def ensure_password(req: CommandRequest) -> str:
    if req.password:
        req.session.password = req.password
    if not req.session.password:
        value = await req.prompt("Enter password:", is_password=True, context="password")
        if not value:
            raise AuthError("Password is required.")
        req.session.password = value
    return req.session.password


async def resolve_api_key(req: CommandRequest, service: str) -> str:
    password = await ensure_password(req)
    try:
        return await req.ctx.users.get_api_key(req.session.user.username, password, service)
    except NotConfigured:
        fallback = getattr(req.ctx.config, f"{service}_api_key", "")
        if fallback:
            return fallback
        raise MissingApiKey(f"Missing {service} API key. Use /keys set {service} <key>.")


def apply_model_flags(req: CommandRequest, command: str) -> Tuple[str, Optional[str]]:
    session = req.session
    model_flag = req.flag_str("m")
    character_flag = req.flag_str("c")
    if model_flag:
        if session.session_model is None:
            session.session_model = model_flag
            req.output(f"Session model set to: {model_flag}")
        elif session.session_model != model_flag:
            req.controller.log.info(f"Ignoring --m={model_flag}; session model already {session.session_model}.")
            req.output(f"Info: Model for this session is already set to '{session.session_model}'. Flag '--m {model_flag}' ignored.")
    if character_flag:
        value = "None" if character_flag.lower() == "none" else character_flag
        if session.session_character is None:
            session.session_character = value
            req.output(f"Session character set to: {value}")
        elif session.session_character != value:
            req.controller.log.info(f"Ignoring --c={character_flag}; session character already {session.session_character}.")
            req.output(
                f"Info: Character for this session is already set to '{session.session_character}'. Flag '--c {character_flag}' ignored."
            )
    model = session.session_model or DEFAULT_MODELS[command]
    character = session.session_character or DEFAULT_CHARACTERS[command]
    return model, (None if character == "None" else character)


async def open_object_store(req: CommandRequest) -> Any:
    password = await ensure_password(req)
    github = await req.ctx.users.get_github_config(req.session.user.username, password)
    merged = {**req.ctx.github_defaults, **{k: v for k, v in github.items() if v}}
    if not merged.get("owner") or not merged.get("repo"):
        raise NotConfigured("GitHub repository not configured. Use /github-config --owner=<owner> --repo=<repo>.")
    return req.ctx.object_store_factory(merged)


async def clear_research_result(req: CommandRequest) -> None:
    session = req.session
    session.current_research_result = None
    session.current_research_filename = None
    session.current_research_summary = None
    session.current_research_query = None
    await req.controller.persist_session(session)


# ---------------------------------------------------------------------------
# research
# ---------------------------------------------------------------------------


async def classify_query(req: CommandRequest, llm: Any, query: str) -> Optional[str]:
    telemetry = req.session.telemetry
    telemetry.emit_status({"stage": "classification", "message": "Running token classifier to enrich query."}, force=True)
    try:
        rsp = await llm.complete_chat(
            messages=[{"role": "user", "content": query}], temperature=0.3, max_tokens=500
        )
    except ProviderError as exc:
        req.controller.log.warn(f"Token classification failed: {exc}")
        req.output(f"Token classification failed: {exc}. Proceeding without.")
        return None
    if rsp.usage:
        telemetry.emit_token_usage({**rsp.usage, "stage": "classification", "model": rsp.model})
    telemetry.emit_thought({"text": "Token classifier metadata captured.", "stage": "classification"})
    return rsp.content or None


async def run_research(
    req: CommandRequest,
    query: str,
    depth: int,
    breadth: int,
    model: str,
    character: Optional[str],
    classify: bool = False,
) -> HandlerOutcome:
    session = req.session
    ctx = req.ctx
    brave_key = await resolve_api_key(req, "brave")
    venice_key = await resolve_api_key(req, "venice")

    token = CancelToken()
    session.cancel_token = token
    try:
        telemetry = session.telemetry
        telemetry.clear_history()
        telemetry.emit_status({"stage": "preparing", "message": "Preparing research command."}, force=True)

        llm = ctx.llm_factory(venice_key, model, character)
        search = ctx.search_factory(brave_key)
        metadata = await classify_query(req, llm, query) if classify else None
        seeds: List[str] = []
        if session.memory_enabled:
            seeds = await prepare_memory_context(
                ctx.memory,
                session.user.username,
                query,
                telemetry,
                limit=session.memory_depth or DEFAULT_RECALL_LIMIT,
                log=req.controller.log.warn,
            )

        engine = ResearchEngine(
            llm=llm,
            search=search,
            telemetry=telemetry,
            model=model,
            max_depth=ctx.config.research_max_depth,
            max_breadth=ctx.config.research_max_breadth,
            budget_sec=ctx.config.research_budget_sec,
            learnings_budget_chars=ctx.config.research_learnings_budget_chars,
            cancel_token=token,
            verbose=ctx.config.debug,
        )
        req.output(f"Starting research: '{query}' (depth {depth}, breadth {breadth}, model {model})")
        req.controller.log.info(f"Research started for {session.user.username}: depth={depth} breadth={breadth}")
        run = await engine.research(query, depth=depth, breadth=breadth, metadata=metadata, seed_queries=seeds)
    finally:
        if session.cancel_token is token:
            session.cancel_token = None

    if run.error == "cancelled":
        return HandlerOutcome(success=False, message="Research cancelled.")
    if not run.success:
        req.controller.log.warn(f"Research failed: {run.error}", {"errors": run.errors[:5]})
        raise ResearchFailed(f"Research failed: {run.error}")

    if session.memory_enabled:
        try:
            await ctx.memory.record(
                session.user.username,
                run.query,
                [learning.text for learning in run.learnings],
                summary=run.summary,
                source=run.filename,
            )
        except OSError as exc:
            req.controller.log.warn(f"Failed to store research memory: {exc}")

    session.current_research_result = run.markdown
    session.current_research_filename = run.filename
    session.current_research_summary = run.summary
    session.current_research_query = run.query
    await req.controller.persist_session(session)
    req.output(f"Research complete! {len(run.learnings)} learnings from {len(run.sources)} sources.")
    if run.summary:
        req.output(run.summary)

    action = await req.prompt(
        f'Choose action for "{run.filename}": [Download] | [Upload] | [Keep] | [Discard]',
        context="post_research_action",
        data={"suggestedFilename": run.filename},
    )
    await handle_post_research_action(req, action)
    return HandlerOutcome(success=True)


async def handle_post_research_action(req: CommandRequest, value: str) -> None:
    session = req.session
    action = str(value or "").strip().lower()
    content = session.current_research_result
    filename = session.current_research_filename or "research-result.md"
    if not content:
        raise ValidationError("No research result is available. Please rerun /research to generate content.")
    if action not in POST_RESEARCH_ACTIONS:
        req.output(f"Invalid action: '{action}'. Result kept; use /storage save to persist it later.")
        return
    if action == "download":
        req.output("Preparing download...")
        req.controller.send(session, {"type": "download_file", "filename": filename, "content": content})
    elif action == "upload":
        req.output("Attempting to upload to GitHub...")
        store = await open_object_store(req)
        result = await store.upload_file(
            path=filename,
            content=content,
            message=f"Research results for query: {session.current_research_query or 'Unknown Query'}",
        )
        req.output("Upload successful!")
        summary = result.get("summary") or {}
        if summary.get("commitUrl"):
            req.output(f"Commit: {summary['commitUrl']}")
        if summary.get("fileUrl"):
            req.output(f"File: {summary['fileUrl']}")
    elif action == "keep":
        req.output("Research result kept in session.")
        return
    else:
        req.output("Research result discarded.")
    await clear_research_result(req)


async def cmd_research(req: CommandRequest) -> HandlerOutcome:
    _require_login(req)
    config = req.ctx.config
    query = " ".join(req.positional_args).strip()
    if not query:
        query = (await req.prompt("Enter query:", context="research_query")).strip()
    if not query:
        raise ValidationError("Research query is missing. Please provide a query.")
    depth = clamp_int(req.flags.get("depth"), DEFAULT_DEPTH, 1, config.research_max_depth)
    breadth = clamp_int(req.flags.get("breadth"), DEFAULT_BREADTH, 1, config.research_max_breadth)
    model, character = apply_model_flags(req, "research")
    await req.controller.persist_session(req.session)
    return await run_research(
        req, query, depth, breadth, model, character, classify=bool(req.flags.get("classify"))
    )


# ---------------------------------------------------------------------------
# chat
# ---------------------------------------------------------------------------


def exit_chat(req: CommandRequest, message: str = "Exited chat mode.") -> None:
    session = req.session
    session.mode = "command"
    session.chat_history = []
    session.chat_llm = None
    req.controller.send(session, {"type": "chat-exit", "message": message})
    req.controller.send(session, {"type": "mode_change", "mode": "command", "prompt": "> "})


async def cmd_chat(req: CommandRequest) -> HandlerOutcome:
    _require_login(req)
    session = req.session
    model, character = apply_model_flags(req, "chat")
    venice_key = await resolve_api_key(req, "venice")
    session.chat_llm = req.ctx.llm_factory(venice_key, model, character)
    session.chat_history = []
    session.mode = "chat"
    await req.controller.persist_session(session)
    req.controller.send(session, {"type": "chat-ready", "model": model, "character": character})
    return HandlerOutcome(
        mode_change=ModeChange(mode="chat", prompt="chat> "),
        message="Chat mode active. Type /exit to leave or /exitresearch to research this conversation.",
    )


async def cmd_exit(req: CommandRequest) -> HandlerOutcome:
    if req.session.mode != "chat":
        raise ValidationError("Not in chat mode.")
    exit_chat(req)
    return HandlerOutcome()


async def cmd_exitresearch(req: CommandRequest) -> HandlerOutcome:
    session = req.session
    if session.mode != "chat":
        raise ValidationError("Not in chat mode.")
    query = query_from_chat_history(session.chat_history)
    exit_chat(req, "Exited chat mode; starting research from the conversation.")
    if not query:
        raise ValidationError("Chat history has no user messages to research.")
    config = req.ctx.config
    depth = clamp_int(req.flags.get("depth"), DEFAULT_DEPTH, 1, config.research_max_depth)
    breadth = clamp_int(req.flags.get("breadth"), DEFAULT_BREADTH, 1, config.research_max_breadth)
    model, character = apply_model_flags(req, "research")
    return await run_research(req, query, depth, breadth, model, character)


async def handle_chat_message(controller: Any, session: Any, text: str) -> HandlerOutcome:
    message = str(text or "").strip()
    if session.mode != "chat" or session.chat_llm is None:
        raise ValidationError("Not in chat mode. Use /chat first.")
    if not message:
        return HandlerOutcome()
    if message.startswith("/"):
        parsed = parse_command_args(message)
        name = parsed["command_name"]
        if name not in CHAT_COMMANDS:
            raise ValidationError(f"Unknown in-chat command: /{name}. Use /exit or /exitresearch.")
        req = CommandRequest(controller, session, name, parsed["positional_args"], parsed["flags"])
        return await CHAT_COMMANDS[name](req)

    session.chat_history.append({"role": "user", "content": message})
    try:
        rsp = await session.chat_llm.complete_chat(
            messages=session.chat_history[-CHAT_HISTORY_LIMIT:], temperature=0.7, max_tokens=2000
        )
    except ProviderError as exc:
        if not exc.transient and exc.status in (401, 403):
            exit_chat(CommandRequest(controller, session, "chat"), "Chat ended after a provider error.")
        raise
    session.chat_history.append({"role": "assistant", "content": rsp.content})
    if rsp.usage:
        session.telemetry.emit_token_usage({**rsp.usage, "stage": "chat", "model": rsp.model})
    controller.send(
        session,
        {"type": "chat-response", "message": rsp.content, "reasoning": rsp.reasoning, "model": rsp.model},
    )
    return HandlerOutcome()


# ---------------------------------------------------------------------------
# storage
# ---------------------------------------------------------------------------


async def cmd_storage(req: CommandRequest) -> HandlerOutcome:
    _require_login(req)
    if not req.positional_args:
        raise ValidationError("Usage: /storage list|get|save|delete <path> [--ref --branch --message --out --overwrite --keep]")
    action = req.positional_args[0].lower()
    path = req.positional_args[1] if len(req.positional_args) > 1 else ""
    session = req.session

    if action == "list":
        store = await open_object_store(req)
        listing = await store.list_entries(path, ref=req.flag_str("ref"))
        req.output(f"Contents of /{listing['path']} @ {listing['ref']}:")
        for entry in listing["entries"]:
            marker = "/" if entry["type"] == "dir" else ""
            size = f" ({entry['size']} bytes)" if entry.get("size") and entry["type"] == "file" else ""
            req.output(f"  {entry['name']}{marker}{size}")
        if not listing["entries"]:
            req.output("  (empty)")
        return HandlerOutcome()

    if action == "get":
        store = await open_object_store(req)
        result = await store.fetch_file(path, ref=req.flag_str("ref"))
        out = req.flags.get("out")
        if out:
            filename = out if isinstance(out, str) else result["path"].rsplit("/", 1)[-1]
            req.controller.send(session, {"type": "download_file", "filename": filename, "content": result["content"]})
        else:
            req.output(result["content"])
        return HandlerOutcome()

    if action == "save":
        content = session.current_research_result
        if not content:
            raise ValidationError("No research result to save. Run /research first.")
        target = path or session.current_research_filename
        store = await open_object_store(req)
        branch = req.flag_str("branch")
        if not req.flags.get("overwrite") and await store.exists(target, ref=branch):
            raise ValidationError(f"{target} already exists. Use --overwrite to replace it.")
        result = await store.upload_file(
            path=target,
            content=content,
            message=req.flag_str("message") or f"Research results for query: {session.current_research_query or 'Unknown Query'}",
            branch=branch,
        )
        req.output(f"Saved {result['summary']['path']}.")
        if result["summary"].get("commitUrl"):
            req.output(f"Commit: {result['summary']['commitUrl']}")
        if not req.flags.get("keep"):
            await clear_research_result(req)
        return HandlerOutcome()

    if action == "delete":
        if not path:
            raise ValidationError("Usage: /storage delete <path>")
        store = await open_object_store(req)
        answer = await req.prompt(f"Delete {path}? (y/n)", context="storage_delete_confirm")
        if answer.strip().lower() not in {"y", "yes"}:
            return HandlerOutcome(message="Delete cancelled.")
        await store.delete_file(path, branch=req.flag_str("branch"), message=req.flag_str("message"))
        return HandlerOutcome(message=f"Deleted {path}.")

    raise ValidationError(f"Unknown storage action '{action}'. Use list, get, save or delete.")


# ---------------------------------------------------------------------------
# keys / credentials
# ---------------------------------------------------------------------------


async def cmd_keys(req: CommandRequest) -> HandlerOutcome:
    _require_login(req)
    users = req.ctx.users
    username = req.session.user.username
    action = (req.positional_args[0].lower() if req.positional_args else "check")

    if action in {"set", "clear"}:
        if len(req.positional_args) < 2:
            raise ValidationError(f"Usage: /keys {action} <{'|'.join(API_SERVICES)}>")
        service = req.positional_args[1].lower()
        value: Optional[str] = None
        if action == "set":
            value = req.positional_args[2] if len(req.positional_args) > 2 else None
            if not value:
                value = await req.prompt(f"Enter {service} API key:", is_password=True, context="api_key")
            if not str(value or "").strip():
                raise ValidationError("API key must not be empty.")
        password = await ensure_password(req)
        record = await users.set_api_key(service, value, password, username)
        verb = "stored" if action == "set" else "cleared"
        return HandlerOutcome(user=record, message=f"{service} API key {verb}.")

    if action in {"check", "stat"}:
        for service in (*API_SERVICES, "github"):
            configured = await users.has_api_key(username, service)
            req.output(f"{service}: {'configured' if configured else 'not configured'}")
        if action == "stat":
            record = await users.get_user_data(username)
            view = record.public_view()
            req.output(f"GitHub repo: {view['githubOwner'] or '-'}/{view['githubRepo'] or '-'} ({view['githubBranch']})")
            req.output(f"Password last changed: {record.password_changed or 'never'}")
        return HandlerOutcome()

    if action == "test":
        password = await ensure_password(req)
        results = await users.test_api_keys(password, username)
        for service, result in results.items():
            if result.get("success") is None:
                req.output(f"{service}: not configured")
            elif result["success"]:
                req.output(f"{service}: OK")
            else:
                req.output(f"{service}: FAILED ({result.get('error')})")
        return HandlerOutcome()

    raise ValidationError(f"Unknown keys action '{action}'. Use set, clear, check, stat or test.")


async def cmd_password_change(req: CommandRequest) -> HandlerOutcome:
    _require_login(req)
    current = await req.prompt("Enter current password:", is_password=True, context="password_current")
    new = await req.prompt("Enter new password:", is_password=True, context="password_new")
    confirm = await req.prompt("Confirm new password:", is_password=True, context="password_confirm")
    if new != confirm:
        raise ValidationError("New passwords do not match.")
    record = await req.ctx.users.change_password(req.session.user.username, current, new)
    req.session.password = new
    return HandlerOutcome(user=record, message="Password changed. Stored keys were re-encrypted.")


async def cmd_github_config(req: CommandRequest) -> HandlerOutcome:
    _require_login(req)
    users = req.ctx.users
    username = req.session.user.username
    updates = {k: req.flag_str(k) for k in ("owner", "repo", "branch") if req.flag_str(k) is not None}
    token: Optional[str] = None
    if "token" in req.flags:
        token = req.flag_str("token")
        if token is None:
            token = await req.prompt("Enter GitHub token:", is_password=True, context="github_token")
    action = req.positional_args[0].lower() if req.positional_args else ("set" if updates or token is not None else "show")
    password = await ensure_password(req)

    if action == "set":
        record = await users.set_github_config(username, password, token=token, **updates)
        view = record.public_view()
        return HandlerOutcome(
            user=record,
            message=f"GitHub config saved: {view['githubOwner'] or '-'}/{view['githubRepo'] or '-'} ({view['githubBranch']}).",
        )
    if action == "verify":
        store = await open_object_store(req)
        result = await store.verify()
        cfg = result["config"]
        return HandlerOutcome(message=f"Verified {cfg['owner']}/{cfg['repo']} (branch {cfg['branch']}).")
    if action == "show":
        github = await users.get_github_config(username, password)
        req.output(f"Owner: {github['owner'] or '-'}")
        req.output(f"Repo: {github['repo'] or '-'}")
        req.output(f"Branch: {github['branch']}")
        req.output(f"Token: {'configured' if github['token'] else 'not configured'}")
        return HandlerOutcome()
    raise ValidationError(f"Unknown github-config action '{action}'. Use show, set or verify.")


# ---------------------------------------------------------------------------
# memory
# ---------------------------------------------------------------------------


async def cmd_memory(req: CommandRequest) -> HandlerOutcome:
    _require_login(req)
    session = req.session
    action = (req.positional_args[0] if req.positional_args else "stat").strip().lower()
    if action == "on":
        session.memory_enabled = True
        if req.flags.get("depth") is not None:
            session.memory_depth = clamp_int(req.flags.get("depth"), DEFAULT_RECALL_LIMIT, 1, MAX_FOLLOW_UP_QUERIES)
        await req.controller.persist_session(session)
        depth = session.memory_depth or DEFAULT_RECALL_LIMIT
        return HandlerOutcome(message=f"Research memory enabled (recalling up to {depth} records).")
    if action == "off":
        session.memory_enabled = False
        await req.controller.persist_session(session)
        return HandlerOutcome(message="Research memory disabled.")
    if action == "stat":
        stats = await req.ctx.memory.stats(session.user.username)
        state = "on" if session.memory_enabled else "off"
        req.output(f"Memory: {state} | Stored records: {stats['stored']} | Last stored: {stats['lastStoredAt'] or 'never'}")
        return HandlerOutcome()
    if action == "clear":
        removed = await req.ctx.memory.clear(session.user.username)
        return HandlerOutcome(message=f"Cleared {removed} memory records.")
    raise ValidationError(f"Unknown memory action '{action}'. Use on, off, stat or clear.")


async def cmd_cancel(req: CommandRequest) -> HandlerOutcome:
    # a running research is cancelled before the command is queued
    return HandlerOutcome(message="No research is running.")


# ---------------------------------------------------------------------------
# session / ancillary
# ---------------------------------------------------------------------------


async def cmd_login(req: CommandRequest) -> HandlerOutcome:
    session = req.session
    username = req.positional_args[0] if req.positional_args else ""
    if not username:
        username = (await req.prompt("Username:", context="login_username")).strip()
    if not username:
        raise ValidationError("Username is required.")
    password = req.password or await req.prompt("Password:", is_password=True, context="login_password")
    record = await req.ctx.users.authenticate(username, password)
    session.user = record
    session.password = password
    req.controller.log.info(f"User {record.username} logged in.")
    req.controller.send(session, {"type": "login_success", "username": record.username, "role": record.role})
    return HandlerOutcome(user=record, message=f"Logged in as {record.username} ({record.role}).")


async def cmd_logout(req: CommandRequest) -> HandlerOutcome:
    session = req.session
    previous = session.user.username
    if session.mode == "chat":
        exit_chat(req)
    session.user = public_user()
    session.password = None
    req.controller.log.info(f"User {previous} logged out.")
    req.controller.send(session, {"type": "logout_success", "message": f"Logged out {previous}."})
    return HandlerOutcome(user=session.user, mode_change=ModeChange(mode="command", prompt="> "))


async def cmd_status(req: CommandRequest) -> HandlerOutcome:
    summary = await req.controller.send_status_summary(req.session, reason="command")
    req.output(f"User: {summary['user']} ({summary['role']}) | Mode: {summary['mode']}")
    keys = summary["keys"]
    req.output("Keys: " + ", ".join(f"{k}={'yes' if v else 'no'}" for k, v in keys.items()))
    totals = summary["telemetry"]
    req.output(f"Tokens used: {totals['totalTokens']} across {totals['events']} calls | Sessions: {summary['sessions']}")
    return HandlerOutcome()


async def cmd_help(req: CommandRequest) -> HandlerOutcome:
    public = req.session.user.role == "public"
    req.output("Available commands:")
    for cmd in COMMANDS.values():
        if public and not cmd.public:
            continue
        req.output(f"  {cmd.usage}")
    if public:
        req.output("Log in with /login <username> to unlock research, chat and storage.")
    return HandlerOutcome()


COMMANDS: Dict[str, CommandSpec] = {
    cmd.name: cmd
    for cmd in (
        CommandSpec("research", cmd_research, "/research <query> [--depth=N] [--breadth=N] [--classify] [--m=model] [--c=character]"),
        CommandSpec("chat", cmd_chat, "/chat [--m=model] [--c=character]  (in chat: /exit, /exitresearch)"),
        CommandSpec("storage", cmd_storage, "/storage list|get|save|delete <path> [--ref --branch --message --out --overwrite --keep]", mutating=True),
        CommandSpec("keys", cmd_keys, "/keys set|clear <brave|venice> | /keys check|stat|test", mutating=True),
        CommandSpec("password-change", cmd_password_change, "/password-change", mutating=True),
        CommandSpec("github-config", cmd_github_config, "/github-config [show|set|verify] [--owner= --repo= --branch= --token]", mutating=True),
        CommandSpec("memory", cmd_memory, "/memory on|off|stat|clear [--depth=N]", mutating=True),
        CommandSpec("cancel", cmd_cancel, "/cancel  (stops a running research; /exit also works)"),
        CommandSpec("status", cmd_status, "/status", public=True),
        CommandSpec("help", cmd_help, "/help", public=True),
        CommandSpec("login", cmd_login, "/login <username>", public=True),
        CommandSpec("logout", cmd_logout, "/logout"),
    )
}

CHAT_COMMANDS: Dict[str, Handler] = {"exit": cmd_exit, "exitresearch": cmd_exitresearch}


async def dispatch(req: CommandRequest) -> HandlerOutcome:
    if req.session.mode == "chat":
        if req.name in CHAT_COMMANDS:
            return await CHAT_COMMANDS[req.name](req)
        if req.name not in {"help", "status"}:
            raise ValidationError("Cannot run top-level commands while in chat mode. Use /exit first.")
    cmd = COMMANDS.get(req.name)
    if cmd is None:
        raise ValidationError(f"Unknown command: /{req.name}. Type /help for available commands.")
    if req.session.user.role == "public" and not cmd.public:
        raise AuthError(f"Login required for /{req.name}. Use /login <username>.")
    return await cmd.handler(req)
