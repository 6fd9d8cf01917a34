import asyncio
import math
import random
import re
import time
import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple
from urllib.parse import urlparse

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)

from research_terminal.errors import (
    MissingApiKey,
    ProviderError,
    ProviderTimeout,
    RunCancelled,
)

PROMPTS_DIR = Path(__file__).resolve().parent / "research_terminal" / "prompts"

DEFAULT_BRAVE_URL = "https://api.search.brave.com/res/v1/web/search"
DEFAULT_VENICE_URL = "https://api.venice.ai/api/v1"
DEFAULT_RESEARCH_MODEL = "llama-3.3-70b"
DEFAULT_CHAT_MODEL = "qwen3-235b"
DEFAULT_RESEARCH_CHARACTER = "archon"
DEFAULT_CHAT_CHARACTER = "bitcore"

DEFAULT_DEPTH = 2
DEFAULT_BREADTH = 3
MAX_SUBQUERY_CHARS = 500
MAX_SEARCH_QUERY_CHARS = 1000
MAX_ANALYSIS_CONTENT_CHARS = 50000

QUESTION_WORDS = ("what", "how", "why", "when", "where", "which")

STAGE_GENERATE_QUERIES = "generate-queries"
STAGE_PROCESS_RESULTS = "process-results"
STAGE_GENERATE_SUMMARY = "generate-summary"

_LIST_MARKER_RE = re.compile(r"^\s*(?:[\*\-•]+|\d+[\.\)]|\d+\s*-)?\s*")
_THINK_RE = re.compile(r"<(think|thinking)>(.*?)</\1>", re.IGNORECASE | re.DOTALL)
_OPEN_THINK_RE = re.compile(r"<(think|thinking)>.*$", re.IGNORECASE | re.DOTALL)


def load_prompt(filename: str) -> str:
    path = PROMPTS_DIR / filename
    if not path.exists():
        raise FileNotFoundError(f"Missing prompt file: {path}")
    return path.read_text(encoding="utf-8").strip()


def render_prompt(template: str, **values: Any) -> str:
    return re.sub(r"\{\{(\w+)\}\}", lambda m: str(values.get(m.group(1), "")), template)


SYSTEM_RESEARCH = load_prompt("research.system.txt")
USER_QUERY_EXPANSION = load_prompt("query_expansion.user.txt")
USER_LEARNINGS = load_prompt("learnings.user.txt")
USER_SUMMARY = load_prompt("summary.user.txt")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def clamp_int(value: Any, default: int, lower: int, upper: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    return max(lower, min(upper, parsed))


def normalize_text_key(text: str) -> str:
    return " ".join(unicodedata.normalize("NFKC", str(text or "")).casefold().split())


def slugify_for_filename(text: str, max_len: int = 60) -> str:
    normalized = unicodedata.normalize("NFKC", str(text or ""))
    raw = "".join(ch.lower() if ch.isalnum() else "-" for ch in normalized.strip())
    compact = "-".join(part for part in raw.split("-") if part)
    if not compact:
        compact = "research-task"
    return compact[:max_len].strip("-") or "research-task"


def suggested_filename(query: str, when: Optional[datetime] = None) -> str:
    stamp = (when or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S")
    return f"research-{slugify_for_filename(query)}-{stamp}.md"


def is_valid_absolute_http_url(url: str) -> bool:
    candidate = (url or "").strip()
    if not candidate:
        return False
    parsed = urlparse(candidate)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def strip_think_tags(text: Optional[str]) -> Tuple[str, Optional[str]]:
    raw = str(text or "")
    reasoning = [m.group(2).strip() for m in _THINK_RE.finditer(raw)]
    cleaned = _THINK_RE.sub("", raw)
    dangling = _OPEN_THINK_RE.search(cleaned)
    if dangling:
        reasoning.append(re.sub(r"^<(think|thinking)>", "", dangling.group(0), flags=re.IGNORECASE).strip())
        cleaned = cleaned[: dangling.start()]
    reasoning = [r for r in reasoning if r]
    return cleaned.strip(), ("\n\n".join(reasoning) if reasoning else None)


def strip_list_marker(line: str) -> str:
    return _LIST_MARKER_RE.sub("", str(line or ""), count=1).strip().strip('"').strip()


def fallback_queries(topic: str) -> List[str]:
    subject = " ".join(str(topic or "").split())[:200] or "the topic"
    return [
        f"What is {subject}?",
        f"How does {subject} work?",
        f"Examples of {subject}",
        f"Which aspects of {subject} are most important?",
    ]


def query_from_chat_history(history: List[Dict[str, Any]], max_messages: int = 6) -> str:
    user_lines = [
        str(m.get("content") or "").strip()
        for m in history
        if isinstance(m, dict) and m.get("role") == "user" and str(m.get("content") or "").strip()
    ]
    return " ".join(user_lines[-max_messages:])[:MAX_SEARCH_QUERY_CHARS]


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


@dataclass
class SearchResult:
    title: str
    snippet: str
    url: str

    def to_dict(self) -> Dict[str, str]:
        return {"url": self.url, "title": self.title, "snippet": self.snippet}


class BraveSearch:
    def __init__(
        self,
        api_key: str,
        endpoint: str = DEFAULT_BRAVE_URL,
        timeout_sec: float = 15.0,
        max_retries: int = 3,
        result_count: int = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not str(api_key or "").strip():
            raise MissingApiKey("Brave API key is required. Use /keys set brave <key>.")
        self.api_key = str(api_key).strip()
        self.endpoint = endpoint
        self.timeout_sec = timeout_sec
        self.max_retries = max(1, int(max_retries))
        self.result_count = result_count
        self._transport = transport
        self._sleep = sleep
        self.last_error = ""

    async def _backoff(self, attempt: int) -> None:
        await self._sleep(min(30.0, 1.0 * (2**attempt)) + random.uniform(0, 0.25))

    async def search(self, query: str) -> List[SearchResult]:
        text = " ".join(str(query or "").split())
        if len(text) < 3:
            return []
        text = text[:MAX_SEARCH_QUERY_CHARS]
        headers = {"Accept": "application/json", "X-Subscription-Token": self.api_key}
        params = {"q": text, "count": self.result_count}
        self.last_error = ""
        async with httpx.AsyncClient(timeout=self.timeout_sec, transport=self._transport) as client:
            for attempt in range(self.max_retries):
                try:
                    rsp = await client.get(self.endpoint, params=params, headers=headers)
                except httpx.HTTPError as exc:
                    self.last_error = f"network error: {exc.__class__.__name__}"
                    if attempt < self.max_retries - 1:
                        await self._backoff(attempt)
                        continue
                    break
                if rsp.status_code == 429 or rsp.status_code >= 500:
                    self.last_error = f"HTTP {rsp.status_code}"
                    if attempt < self.max_retries - 1:
                        await self._backoff(attempt)
                        continue
                    break
                if rsp.status_code == 401:
                    self.last_error = "authentication failed (HTTP 401)"
                    break
                if rsp.status_code >= 400:
                    self.last_error = f"API error (HTTP {rsp.status_code})"
                    break
                try:
                    data = rsp.json()
                except ValueError:
                    self.last_error = "invalid JSON in search response"
                    break
                return self._parse_results(data)
        # Fail-soft per query; the pipeline records an empty result set.
        print(f"[search] Brave search failed for '{text[:80]}': {self.last_error}")
        return []

    def _parse_results(self, data: Any) -> List[SearchResult]:
        web = data.get("web", {}) if isinstance(data, dict) else {}
        items = web.get("results", []) if isinstance(web, dict) else []
        out: List[SearchResult] = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            url = str(item.get("url") or "").strip()
            if not is_valid_absolute_http_url(url):
                continue
            out.append(
                SearchResult(
                    title=str(item.get("title") or "").strip(),
                    snippet=str(item.get("description") or item.get("snippet") or "").strip(),
                    url=url,
                )
            )
        return out


@dataclass
class LLMResponse:
    content: str
    model: str
    reasoning: Optional[str] = None
    usage: Optional[Dict[str, int]] = None


def extract_usage(usage: Any) -> Optional[Dict[str, int]]:
    if usage is None:
        return None

    def pick_int(keys: List[str]) -> Optional[int]:
        for key in keys:
            val = usage.get(key) if isinstance(usage, dict) else getattr(usage, key, None)
            if isinstance(val, int) and not isinstance(val, bool):
                return val
        return None

    prompt = pick_int(["prompt_tokens", "input_tokens", "promptTokens"])
    completion = pick_int(["completion_tokens", "output_tokens", "completionTokens"])
    total = pick_int(["total_tokens", "totalTokens"])
    if prompt is None and completion is None and total is None:
        return None
    prompt = prompt or 0
    completion = completion or 0
    return {
        "promptTokens": prompt,
        "completionTokens": completion,
        "totalTokens": total if total is not None else prompt + completion,
    }


class LLMClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_VENICE_URL,
        model: str = DEFAULT_RESEARCH_MODEL,
        character: Optional[str] = None,
        timeout_sec: float = 30.0,
        max_retries: int = 3,
        client: Any = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not str(api_key or "").strip() and client is None:
            raise MissingApiKey("Venice API key is required. Use /keys set venice <key>.")
        self.client = client or AsyncOpenAI(
            api_key=str(api_key).strip(),
            base_url=base_url,
            timeout=timeout_sec,
            max_retries=0,
        )
        self.model = model
        self.character = character
        self.timeout_sec = timeout_sec
        self.max_retries = max(1, int(max_retries))
        self._sleep = sleep

    async def _backoff(self, attempt: int) -> None:
        await self._sleep(min(30.0, 1.0 * (2**attempt)) + random.uniform(0, 0.5))

    async def complete_chat(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> LLMResponse:
        use_model = model or self.model
        kwargs: Dict[str, Any] = {
            "model": use_model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if self.character:
            kwargs["extra_body"] = {"venice_parameters": {"character_slug": self.character}}

        last_exc: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                rsp = await asyncio.wait_for(
                    self.client.chat.completions.create(**kwargs),
                    timeout=self.timeout_sec,
                )
            except (asyncio.TimeoutError, APITimeoutError) as exc:
                raise ProviderTimeout(f"LLM call timed out after {self.timeout_sec:.0f}s.") from exc
            except RateLimitError as exc:
                last_exc = ProviderError("LLM provider rate limit exceeded.", status=429, transient=True)
                if attempt < self.max_retries - 1:
                    await self._backoff(attempt)
                    continue
                raise last_exc from exc
            except APIStatusError as exc:
                status = int(getattr(exc, "status_code", 0) or 0)
                if status >= 500 and attempt < self.max_retries - 1:
                    last_exc = exc
                    await self._backoff(attempt)
                    continue
                raise ProviderError(
                    f"LLM provider returned HTTP {status}.", status=status, transient=status >= 500
                ) from exc
            except APIConnectionError as exc:
                last_exc = ProviderError(f"LLM connection error: {exc}", transient=True)
                if attempt < self.max_retries - 1:
                    await self._backoff(attempt)
                    continue
                raise last_exc from exc
            return self._parse_response(rsp, use_model)
        if last_exc:
            raise ProviderError(str(last_exc), transient=True)
        raise ProviderError("Unexpected failure in chat completion.")

    def _parse_response(self, rsp: Any, model: str) -> LLMResponse:
        choices = getattr(rsp, "choices", None)
        if not choices:
            raise ProviderError("Invalid response from LLM provider: no choices.")
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None) if message is not None else None
        if not isinstance(content, str):
            raise ProviderError("Invalid response from LLM provider: missing content.")
        clean, reasoning = strip_think_tags(content)
        return LLMResponse(
            content=clean,
            model=str(getattr(rsp, "model", None) or model),
            reasoning=reasoning,
            usage=extract_usage(getattr(rsp, "usage", None)),
        )


# ---------------------------------------------------------------------------
# Research engine
# ---------------------------------------------------------------------------


@dataclass
class SubQuery:
    text: str
    depth: int
    parent_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class Learning:
    text: str
    sources: List[str]
    produced_by: str


_STATUS_ORDER = ("planning", "searching", "summarizing", "complete", "failed")


@dataclass
class ResearchRun:
    query: str
    depth: int
    breadth: int
    metadata: Any = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = "planning"
    learnings: List[Learning] = field(default_factory=list)
    sources: Set[str] = field(default_factory=set)
    sub_queries: List[SubQuery] = field(default_factory=list)
    follow_up_questions: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    completed_queries: int = 0
    total_queries: int = 0
    started_at: str = field(default_factory=_now_iso)
    ended_at: Optional[str] = None
    summary: Optional[str] = None
    markdown: Optional[str] = None
    filename: Optional[str] = None
    error: Optional[str] = None

    def advance(self, status: str) -> None:
        if self.status in ("complete", "failed"):
            return
        if _STATUS_ORDER.index(status) > _STATUS_ORDER.index(self.status):
            self.status = status

    @property
    def success(self) -> bool:
        return self.status == "complete"


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


def parse_planner_output(text: str) -> List[str]:
    out: List[str] = []
    for line in str(text or "").splitlines():
        candidate = strip_list_marker(line)
        if not candidate:
            continue
        first = candidate.split(" ", 1)[0].lower().strip("\"'*")
        if first not in QUESTION_WORDS and not candidate.endswith("?"):
            continue
        out.append(candidate)
    return out


def parse_learnings_output(text: str) -> Tuple[List[str], List[str]]:
    learnings: List[str] = []
    questions: List[str] = []
    bucket: Optional[List[str]] = None
    saw_header = False
    for line in str(text or "").splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        lowered = stripped.lower().strip("*#: ")
        if lowered.startswith("key learnings"):
            bucket, saw_header = learnings, True
            continue
        if lowered.startswith("follow-up questions") or lowered.startswith("follow up questions"):
            bucket, saw_header = questions, True
            continue
        item = strip_list_marker(stripped)
        if not item or item.lower().startswith("content:"):
            continue
        if bucket is not None:
            bucket.append(item)
        elif not saw_header and stripped[:1] in {"-", "*", "•"}:
            learnings.append(item)
    return learnings, questions


class ResearchEngine:
    """Depth/breadth-bounded research over a search provider and an LLM.

    Each level plans sub-queries, fetches them concurrently, extracts
    learnings from the results and recurses on the sub-queries that produced
    evidence. Telemetry is emitted in a fixed order and ``complete`` is always
    the final event of a run.
    """

    def __init__(
        self,
        llm: Any,
        search: Any,
        telemetry: Any = None,
        model: Optional[str] = None,
        max_depth: int = 6,
        max_breadth: int = 6,
        concurrency: Optional[int] = None,
        budget_sec: float = 600.0,
        learnings_budget_chars: int = 12000,
        cancel_token: Optional[CancelToken] = None,
        verbose: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.llm = llm
        self.search = search
        self.telemetry = telemetry
        self.model = model
        self.max_depth = max(1, int(max_depth))
        self.max_breadth = max(1, int(max_breadth))
        self.concurrency = concurrency
        self.budget_sec = float(budget_sec)
        self.learnings_budget_chars = max(200, int(learnings_budget_chars))
        self.cancel_token = cancel_token or CancelToken()
        self.verbose = verbose
        self._clock = clock
        self._deadline = 0.0
        self._semaphore = asyncio.Semaphore(max(1, int(concurrency or self.max_breadth)))
        self._seen_queries: Set[str] = set()
        self._learning_keys: Set[str] = set()
        self._seeds: List[str] = []

    # -- public ------------------------------------------------------------

    async def research(
        self,
        query: str,
        depth: Any = DEFAULT_DEPTH,
        breadth: Any = DEFAULT_BREADTH,
        metadata: Any = None,
        seed_queries: Optional[Sequence[str]] = None,
    ) -> ResearchRun:
        original = str(query or "").strip()
        run = ResearchRun(
            query=original,
            depth=clamp_int(depth, DEFAULT_DEPTH, 1, self.max_depth),
            breadth=clamp_int(breadth, DEFAULT_BREADTH, 1, self.max_breadth),
            metadata=metadata,
        )
        started = self._clock()
        self._deadline = started + self.budget_sec
        self._semaphore = asyncio.Semaphore(max(1, int(self.concurrency or run.breadth)))
        self._seen_queries = {normalize_text_key(original)}
        self._learning_keys = set()
        self._seeds = [str(q) for q in (seed_queries or []) if str(q).strip()]
        self._log(f"Starting research run {run.id}: '{original}' depth={run.depth} breadth={run.breadth}")

        try:
            if not original:
                raise ValueError("Research query must not be empty.")
            await self._explore(run, original, parent=None, depth_left=run.depth, breadth=run.breadth, level=1)
            self._check_cancel()
            await self._finalize(run)
        except RunCancelled as exc:
            run.status = "failed"
            run.error = "cancelled"
            run.errors.append(str(exc) or "cancelled")
            self._log(f"Run {run.id} cancelled.")
        except Exception as exc:
            run.status = "failed"
            run.error = run.error or str(exc) or exc.__class__.__name__
            run.errors.append(run.error)
            self._log(f"Run {run.id} failed: {run.error}")

        run.ended_at = _now_iso()
        duration_ms = int((self._clock() - started) * 1000)
        self._emit(
            "emit_complete",
            {
                "success": run.success,
                "durationMs": duration_ms,
                "learnings": len(run.learnings),
                "sources": len(run.sources),
                "suggestedFilename": run.filename,
                "summary": run.summary,
                "error": None if run.success else run.error,
                "meta": {"runId": run.id, "errors": len(run.errors)},
            },
        )
        return run

    # -- levels ------------------------------------------------------------

    async def _explore(
        self,
        run: ResearchRun,
        query_text: str,
        parent: Optional[SubQuery],
        depth_left: int,
        breadth: int,
        level: int,
    ) -> None:
        remaining = run.depth * run.breadth - run.total_queries
        if depth_left <= 0 or remaining <= 0:
            return
        if self._budget_exhausted(run):
            return

        run.advance("planning")
        self._emit("emit_status", {"stage": "planning", "message": f"Planning level {level} queries.", "meta": {"level": level}})
        sub_queries = await self._plan(
            run, query_text, parent, min(breadth, remaining), level, seeds=self._seeds if parent is None else ()
        )
        if not sub_queries:
            return
        run.sub_queries.extend(sub_queries)
        run.total_queries += len(sub_queries)

        run.advance("searching")
        self._emit(
            "emit_status",
            {"stage": "searching", "message": f"Searching {len(sub_queries)} queries.", "meta": {"level": level}},
        )
        fetched = await asyncio.gather(*(self._fetch(run, sq, level, breadth) for sq in sub_queries))

        run.advance("summarizing")
        self._emit("emit_status", {"stage": "summarizing", "message": "Extracting learnings from results.", "meta": {"level": level}})
        extracted = await asyncio.gather(
            *(self._summarize(run, sq, results) for sq, results in zip(sub_queries, fetched))
        )

        new_count = 0
        follow_ups: Dict[str, List[str]] = {}
        for sq, (learnings, questions) in zip(sub_queries, extracted):
            new_count += self._accumulate(run, learnings)
            follow_ups[sq.id] = questions
            for q in questions:
                if q not in run.follow_up_questions:
                    run.follow_up_questions.append(q)
        directions = [q for qs in follow_ups.values() for q in qs][:3]
        if directions:
            self._emit("emit_thought", {"text": "Follow-up directions: " + " | ".join(directions), "source": "planner", "stage": "summarizing"})

        if new_count == 0 or depth_left - 1 <= 0:
            return
        child_breadth = max(1, int(math.ceil(breadth / 2)))
        for sq, results in zip(sub_queries, fetched):
            self._check_cancel()
            if not results:
                continue
            questions = follow_ups.get(sq.id) or []
            next_query = sq.text if not questions else f"{sq.text}\nFollow-up directions:\n" + "\n".join(questions[:3])
            await self._explore(run, next_query, parent=sq, depth_left=depth_left - 1, breadth=child_breadth, level=level + 1)

    async def _plan(
        self,
        run: ResearchRun,
        query_text: str,
        parent: Optional[SubQuery],
        count: int,
        level: int,
        seeds: Sequence[str] = (),
    ) -> List[SubQuery]:
        out: List[SubQuery] = []
        self._take(out, seeds, parent, count, level)
        if seeds and out:
            self._log(f"Seeded {len(out)} queries ahead of planning.")
        if len(out) >= count:
            return out

        prompt = render_prompt(
            USER_QUERY_EXPANSION,
            count=count - len(out),
            query=query_text,
            learnings=self._learnings_context(run, "Previous Findings:"),
        )
        try:
            rsp = await self._call_llm(
                [{"role": "system", "content": SYSTEM_RESEARCH}, {"role": "user", "content": prompt}],
                stage=STAGE_GENERATE_QUERIES,
                temperature=0.7,
                max_tokens=500,
            )
            candidates = parse_planner_output(rsp.content)
        except RunCancelled:
            raise
        except Exception as exc:
            if parent is None and not out:
                run.error = f"Query planning failed: {exc}"
                raise
            run.errors.append(f"planning failed for '{query_text[:80]}': {exc}")
            return out
        if not candidates:
            self._log("Planner returned no usable queries; using fallback queries.")
            candidates = fallback_queries(parent.text if parent else run.query)
        self._take(out, candidates, parent, count, level)
        return out

    def _take(
        self, out: List[SubQuery], candidates: Sequence[str], parent: Optional[SubQuery], count: int, level: int
    ) -> None:
        for text in candidates:
            if len(out) >= count:
                return
            clean = " ".join(str(text).split())[:MAX_SUBQUERY_CHARS].strip()
            key = normalize_text_key(clean)
            if not clean or key in self._seen_queries:
                continue
            self._seen_queries.add(key)
            out.append(SubQuery(text=clean, depth=level, parent_id=parent.id if parent else None))

    async def _fetch(self, run: ResearchRun, sq: SubQuery, level: int, breadth: int) -> List[SearchResult]:
        results: List[SearchResult] = []
        try:
            async with self._semaphore:
                self._check_cancel()
                if self._budget_exhausted(run):
                    return []
                raw = await self._guard(self.search.search(sq.text))
            results = [r for r in (raw or []) if isinstance(r, SearchResult) and r.url]
        except RunCancelled:
            raise
        except Exception as exc:
            run.errors.append(f"search failed for '{sq.text[:80]}': {exc}")
        run.completed_queries += 1
        self._emit(
            "emit_progress",
            {
                "completedQueries": run.completed_queries,
                "totalQueries": run.total_queries,
                "currentDepth": level,
                "totalDepth": run.depth,
                "currentBreadth": breadth,
                "totalBreadth": run.breadth,
                "currentAction": f"Searched: {sq.text[:120]}",
            },
        )
        return results

    async def _summarize(self, run: ResearchRun, sq: SubQuery, results: List[SearchResult]) -> Tuple[List[Learning], List[str]]:
        if not results:
            return [], []
        content = "\n\n".join(
            f"[{i}] {r.title}\nURL: {r.url}\n{r.snippet}" for i, r in enumerate(results, start=1)
        )[:MAX_ANALYSIS_CONTENT_CHARS]
        prompt = render_prompt(
            USER_LEARNINGS,
            query=sq.text,
            learnings=self._learnings_context(run, "Known Learnings:"),
            content=content,
            num_learnings=3,
            num_questions=2,
        )
        urls = list(dict.fromkeys(r.url for r in results))
        try:
            async with self._semaphore:
                self._check_cancel()
                if self._budget_exhausted(run):
                    return [], []
                rsp = await self._call_llm(
                    [{"role": "system", "content": SYSTEM_RESEARCH}, {"role": "user", "content": prompt}],
                    stage=STAGE_PROCESS_RESULTS,
                    temperature=0.5,
                    max_tokens=1000,
                )
            texts, questions = parse_learnings_output(rsp.content)
        except RunCancelled:
            raise
        except Exception as exc:
            run.errors.append(f"result processing failed for '{sq.text[:80]}': {exc}")
            return [], []
        return [Learning(text=t, sources=list(urls), produced_by=sq.id) for t in texts], questions

    def _accumulate(self, run: ResearchRun, learnings: List[Learning]) -> int:
        added = 0
        for learning in learnings:
            key = normalize_text_key(learning.text)
            if not key or key in self._learning_keys:
                continue
            self._learning_keys.add(key)
            run.learnings.append(learning)
            run.sources.update(learning.sources)
            added += 1
        return added

    async def _finalize(self, run: ResearchRun) -> None:
        self._emit("emit_status", {"stage": "finalizing", "message": "Generating research report."})
        if not run.learnings:
            run.status = "failed"
            run.error = run.error or "No learnings were produced."
            return
        run.summary = await self._generate_summary(run)
        run.filename = suggested_filename(run.query)
        run.markdown = render_markdown(run)
        run.status = "complete"
        self._log(f"Run {run.id} complete: {len(run.learnings)} learnings, {len(run.sources)} sources.")

    async def _generate_summary(self, run: ResearchRun) -> str:
        numbered = "\n".join(f"{i}. {l.text}" for i, l in enumerate(run.learnings, start=1))
        prompt = render_prompt(USER_SUMMARY, query=run.query, learnings=numbered)
        try:
            self._check_cancel()
            rsp = await self._call_llm(
                [{"role": "system", "content": SYSTEM_RESEARCH}, {"role": "user", "content": prompt}],
                stage=STAGE_GENERATE_SUMMARY,
                temperature=0.7,
                max_tokens=2000,
            )
            if rsp.content.strip():
                return rsp.content.strip()
        except RunCancelled:
            raise
        except Exception as exc:
            run.errors.append(f"summary generation failed: {exc}")
        return "Failed to generate a narrative summary. Key learnings found:\n" + "\n".join(
            f"- {l.text}" for l in run.learnings
        )

    # -- helpers -----------------------------------------------------------

    def _learnings_context(self, run: ResearchRun, heading: str) -> str:
        picked: List[str] = []
        used = 0
        for learning in reversed(run.learnings):
            cost = len(learning.text) + 3
            if used + cost > self.learnings_budget_chars:
                break
            picked.append(learning.text)
            used += cost
        if not picked:
            return ""
        return heading + "\n" + "\n".join(f"- {t}" for t in reversed(picked))

    async def _call_llm(self, messages: List[Dict[str, str]], stage: str, temperature: float, max_tokens: int) -> LLMResponse:
        rsp = await self._guard(
            self.llm.complete_chat(messages=messages, model=self.model, temperature=temperature, max_tokens=max_tokens)
        )
        if rsp.usage:
            self._emit("emit_token_usage", {**rsp.usage, "stage": stage, "model": rsp.model})
        return rsp

    async def _guard(self, awaitable: Awaitable[Any]) -> Any:
        self._check_cancel()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.cancel_token.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done and not self.cancel_token.cancelled:
            return task.result()
        task.cancel()
        raise RunCancelled(self.cancel_token.reason or "cancelled")

    def _check_cancel(self) -> None:
        if self.cancel_token.cancelled:
            raise RunCancelled(self.cancel_token.reason or "cancelled")

    def _budget_exhausted(self, run: ResearchRun) -> bool:
        if self._clock() < self._deadline:
            return False
        message = "time budget exhausted"
        if message not in run.errors:
            run.errors.append(message)
            self._log(f"Run {run.id}: {message}; skipping remaining work.")
        return True

    def _emit(self, method: str, payload: Dict[str, Any]) -> None:
        if self.telemetry is None:
            return
        try:
            getattr(self.telemetry, method)(payload)
        except Exception:
            # Observability must not break core execution flow.
            pass

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[progress] {message}")


def render_markdown(run: ResearchRun) -> str:
    source_index: Dict[str, int] = {}
    for learning in run.learnings:
        for url in learning.sources:
            if url not in source_index:
                source_index[url] = len(source_index) + 1
    lines = [
        "# Research Results",
        "",
        "## Query",
        "",
        run.query,
        "",
        "## Summary",
        "",
        (run.summary or "").strip(),
        "",
        "## Key Learnings",
        "",
    ]
    for i, learning in enumerate(run.learnings, start=1):
        refs = "".join(f"[{source_index[u]}]" for u in learning.sources if u in source_index)
        lines.append(f"{i}. {learning.text}" + (f" {refs}" if refs else ""))
    lines.extend(["", "## References", ""])
    for url, idx in source_index.items():
        lines.append(f"{idx}. {url}")
    return "\n".join(lines).rstrip() + "\n"
