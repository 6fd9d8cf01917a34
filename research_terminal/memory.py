import asyncio
import json
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from research_terminal.errors import ValidationError

DEFAULT_RECALL_LIMIT = 5
MAX_FOLLOW_UP_QUERIES = 6
MAX_STORED_RECORDS = 200

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")
_WORD_RE = re.compile(r"[^\W_]+", re.UNICODE)
_STOP_WORDS = {
    "about", "after", "also", "and", "are", "does", "for", "from", "have", "how", "into",
    "its", "that", "the", "their", "this", "what", "when", "where", "which", "while",
    "who", "why", "with",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _truncate(text: Any, limit: int) -> str:
    value = " ".join(str(text or "").split())
    if len(value) <= limit:
        return value
    return value[: limit - 1].rstrip() + "…"


def keywords(text: str) -> List[str]:
    seen: List[str] = []
    for word in _WORD_RE.findall(str(text or "").casefold()):
        if len(word) < 3 or word in _STOP_WORDS or word in seen:
            continue
        seen.append(word)
    return seen


def score_record(query_terms: List[str], record: Dict[str, Any]) -> float:
    if not query_terms:
        return 0.0
    haystack = set(keywords(" ".join([record.get("query") or "", record.get("content") or ""])))
    haystack.update(record.get("tags") or [])
    hits = sum(1 for term in query_terms if term in haystack)
    return round(hits / len(query_terms), 3)


class MemoryStore:
    """Per-operator ledger of finished research runs.

    Records are recalled by keyword overlap with a new query and turned
    into follow-up questions that seed the next run's planner.
    """

    def __init__(self, memory_dir: Path, max_records: int = MAX_STORED_RECORDS) -> None:
        self.memory_dir = Path(memory_dir)
        self.max_records = max(1, int(max_records))
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, username: str) -> asyncio.Lock:
        lock = self._locks.get(username)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[username] = lock
        return lock

    def _path_for(self, username: str) -> Path:
        name = str(username or "").strip()
        if not _USERNAME_RE.match(name):
            raise ValidationError(f"Invalid username: {username!r}")
        return self.memory_dir / f"{name.lower()}.json"

    def _read(self, path: Path) -> List[Dict[str, Any]]:
        if not path.exists():
            return []
        raw = json.loads(path.read_text(encoding="utf-8"))
        records = raw.get("records") if isinstance(raw, dict) else None
        return [r for r in records if isinstance(r, dict)] if isinstance(records, list) else []

    def _write(self, path: Path, records: List[Dict[str, Any]]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        payload = {"version": 1, "updatedAt": _now_iso(), "records": records}
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(path)

    async def records(self, username: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._read, self._path_for(username))

    async def record(
        self,
        username: str,
        query: str,
        learnings: List[str],
        summary: Optional[str] = None,
        source: Optional[str] = None,
    ) -> Dict[str, Any]:
        text = str(query or "").strip()
        if not text:
            raise ValidationError("Memory records need a query.")
        entry = {
            "id": str(uuid.uuid4()),
            "layer": "research",
            "query": _truncate(text, 280),
            "preview": _truncate(summary or (learnings[0] if learnings else text), 260),
            "content": "\n".join(_truncate(t, 400) for t in learnings[:8]),
            "tags": keywords(text)[:5],
            "source": source,
            "timestamp": _now_iso(),
        }
        path = self._path_for(username)
        async with self._lock_for(path.name):
            records = await asyncio.to_thread(self._read, path)
            records.append(entry)
            await asyncio.to_thread(self._write, path, records[-self.max_records:])
        print(f"[memory] Stored research memory for {username}: {entry['query'][:80]}")
        return entry

    async def recall(self, username: str, query: str, limit: int = DEFAULT_RECALL_LIMIT) -> List[Dict[str, Any]]:
        terms = keywords(query)
        scored = []
        for position, record in enumerate(await self.records(username)):
            score = score_record(terms, record)
            if score > 0:
                scored.append((score, position, {**record, "score": score}))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [record for _, _, record in scored[: max(1, int(limit))]]

    async def stats(self, username: str) -> Dict[str, Any]:
        records = await self.records(username)
        return {
            "stored": len(records),
            "lastStoredAt": records[-1].get("timestamp") if records else None,
        }

    async def clear(self, username: str) -> int:
        path = self._path_for(username)
        async with self._lock_for(path.name):
            records = await asyncio.to_thread(self._read, path)
            await asyncio.to_thread(self._write, path, [])
        return len(records)


def derive_follow_up_queries(base_query: str, records: List[Dict[str, Any]], max_queries: int = 4) -> List[Dict[str, Any]]:
    root = _truncate(base_query, 180)
    if not root or not records:
        return []
    limit = min(MAX_FOLLOW_UP_QUERIES, max(1, int(max_queries)))
    seen = set()
    out: List[Dict[str, Any]] = []
    for record in records:
        subject = _truncate(record.get("query") or record.get("preview"), 140)
        if not subject or subject.casefold() in seen:
            continue
        seen.add(subject.casefold())
        tags = list(record.get("tags") or [])
        focus = tags[0] if tags else (record.get("layer") or "this topic")
        if len(out) % 2 == 0:
            question = f'How does "{subject}" impact {focus} for {root}?'
        else:
            question = f'What recent insights about "{subject}" matter for {root}?'
        out.append(
            {
                "query": _truncate(question, 240),
                "focus": focus,
                "layer": record.get("layer"),
                "memoryId": record.get("id"),
                "tags": tags[:3],
                "score": record.get("score"),
            }
        )
        if len(out) >= limit:
            break
    return out


async def prepare_memory_context(
    store: MemoryStore,
    username: str,
    query: str,
    telemetry: Any,
    limit: int = DEFAULT_RECALL_LIMIT,
    log: Optional[Callable[[str], None]] = None,
) -> List[str]:
    """Recall prior research for ``query`` and return memory-seeded queries.

    Emits ``memory`` status, context, thought and suggestion telemetry.
    Storage failures degrade to an empty list with a ``memory-warning``
    status.
    """
    telemetry.emit_status({"stage": "memory", "message": "Sampling memory intelligence for context."}, force=True)
    try:
        records = await store.recall(username, query, limit=limit)
        stats = await store.stats(username)
    except (OSError, ValueError) as exc:
        if log is not None:
            log(f"Memory recall failed: {exc}")
        telemetry.emit_status(
            {"stage": "memory-warning", "message": "Memory intelligence unavailable.", "detail": str(exc)}, force=True
        )
        return []

    telemetry.emit_memory_context(
        {"query": query, "records": records, "stats": {"stored": stats["stored"], "retrieved": len(records)}}
    )
    if not records:
        telemetry.emit_thought(
            {"text": "No matching memory snippets found; continuing with live research.", "stage": "memory"}
        )
        return []
    plural = "" if len(records) == 1 else "s"
    telemetry.emit_thought({"text": f"Loaded {len(records)} memory snippet{plural} for context.", "stage": "memory"})

    follow_ups = derive_follow_up_queries(query, records, max_queries=limit)
    if follow_ups:
        telemetry.emit_status(
            {
                "stage": "memory-prioritization",
                "message": f"Injecting {len(follow_ups)} memory-guided follow-up queries.",
            },
            force=True,
        )
        telemetry.emit_suggestions(
            {
                "source": "memory",
                "suggestions": [{**f, "prompt": f["query"]} for f in follow_ups],
            }
        )
    return [f["query"] for f in follow_ups]
