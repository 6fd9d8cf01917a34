import asyncio
import re
from typing import Any, Callable, Dict, List, Optional, Sequence

from research_pipeline import LLMResponse, SearchResult
from research_terminal.errors import ProviderError

USAGE = {"promptTokens": 10, "completionTokens": 5, "totalTokens": 15}


def prompt_stage(messages: List[Dict[str, str]]) -> str:
    text = messages[-1]["content"]
    if "specific research questions" in text:
        return "plan"
    if "Search results:" in text:
        return "learn"
    if "narrative summary" in text:
        return "summary"
    return "chat"


class FakeLLM:
    """Answers planner, summarizer and report prompts with canned text."""

    def __init__(
        self,
        planner: Optional[Callable[[int, int], str]] = None,
        learnings: Optional[Callable[[str], str]] = None,
        summary: str = "Stoicism is a Hellenistic philosophy.",
        chat_reply: str = "Hello from the fake model.",
        usage_stages: Sequence[str] = ("plan", "learn", "summary", "chat"),
        fail_stages: Sequence[str] = (),
    ) -> None:
        self.planner = planner or self._default_planner
        self.learnings = learnings or self._default_learnings
        self.summary = summary
        self.chat_reply = chat_reply
        self.usage_stages = set(usage_stages)
        self.fail_stages = set(fail_stages)
        self.calls: List[Dict[str, Any]] = []
        self._plans = 0

    def _default_planner(self, count: int, call: int) -> str:
        return "\n".join(f"{i + 1}. What is aspect {call}-{i} of stoicism?" for i in range(count))

    @staticmethod
    def _default_learnings(query: str) -> str:
        return f"Key Learnings:\n- {query} fact one\n- {query} fact two\n"

    def stages(self) -> List[str]:
        return [c["stage"] for c in self.calls]

    async def complete_chat(self, messages, model=None, temperature=0.7, max_tokens=1000):
        stage = prompt_stage(messages)
        self.calls.append({"stage": stage, "messages": messages, "model": model, "temperature": temperature})
        if stage in self.fail_stages:
            raise ProviderError(f"{stage} failed", status=400)
        text = messages[-1]["content"]
        if stage == "plan":
            self._plans += 1
            count = int(re.search(r"Generate (\d+) specific", text).group(1))
            content = self.planner(count, self._plans)
        elif stage == "learn":
            query = re.search(r'Research question: "(.*)"', text).group(1)
            content = self.learnings(query)
        elif stage == "summary":
            content = self.summary
        else:
            content = self.chat_reply
        return LLMResponse(
            content=content,
            model=model or "fake-model",
            usage=dict(USAGE) if stage in self.usage_stages else None,
        )


class FakeSearch:
    def __init__(self, per_query: int = 2, block: Optional[asyncio.Event] = None, empty_for: Sequence[str] = ()) -> None:
        self.per_query = per_query
        self.block = block
        self.empty_for = set(empty_for)
        self.queries: List[str] = []

    async def search(self, query: str) -> List[SearchResult]:
        self.queries.append(query)
        if self.block is not None:
            await self.block.wait()
        if query in self.empty_for:
            return []
        slug = re.sub(r"[^a-z0-9]+", "-", query.lower()).strip("-")
        return [
            SearchResult(title=f"{query} #{i}", snippet=f"Snippet {i} about {query}", url=f"https://example.com/{slug}/{i}")
            for i in range(self.per_query)
        ]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_for(transport: Any, event_type: str, count: int = 1, timeout: float = 3.0) -> Dict[str, Any]:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(transport.of_type(event_type)) < count:
        if loop.time() > deadline:
            raise AssertionError(f"timed out waiting for {event_type}; saw {core_types(transport)}")
        await asyncio.sleep(0.005)
    return transport.of_type(event_type)[count - 1]


def core_types(transport: Any) -> List[str]:
    return [t for t in transport.types() if t != "log-event"]
