import time
from typing import Any, Callable, Dict, Optional

from research_pipeline import BraveSearch, LLMClient
from research_terminal.config import AppConfig
from research_terminal.config_store import EncryptedConfigStore
from research_terminal.errors import ConfigError
from research_terminal.log_channel import ActivityChannel, LogChannel, ServerLog
from research_terminal.memory import MemoryStore
from research_terminal.object_store import GitHubObjectStore
from research_terminal.session_store import SessionStateStore
from research_terminal.telemetry import TelemetryRegistry
from research_terminal.user_store import UserStore

SearchFactory = Callable[[str], Any]
LLMFactory = Callable[[str, str, Optional[str]], Any]
ObjectStoreFactory = Callable[[Dict[str, Any]], Any]


class AppContext:
    """Process-wide collaborators, built once at boot and shared by sessions."""

    def __init__(
        self,
        config: AppConfig,
        users: Optional[UserStore] = None,
        search_factory: Optional[SearchFactory] = None,
        llm_factory: Optional[LLMFactory] = None,
        object_store_factory: Optional[ObjectStoreFactory] = None,
        telemetry: Optional[TelemetryRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.clock = clock
        self.log_channel = LogChannel(buffer_size=200, default_source="server")
        self.log = ServerLog(self.log_channel, tag="server", debug=config.debug)
        self.activity = ActivityChannel(buffer_size=200)
        self.telemetry = telemetry or TelemetryRegistry()
        self.users = users or UserStore(config)
        self.session_store = SessionStateStore(config.session_file)
        self.memory = MemoryStore(config.memory_dir)
        self.config_store = EncryptedConfigStore(config.config_file, config.config_secret)
        self.github_defaults: Dict[str, Any] = {}
        self.search_factory = search_factory or self._default_search
        self.llm_factory = llm_factory or self._default_llm
        self.object_store_factory = object_store_factory or self._default_object_store

    def _default_search(self, api_key: str) -> BraveSearch:
        return BraveSearch(api_key=api_key, endpoint=self.config.brave_search_url)

    def _default_llm(self, api_key: str, model: str, character: Optional[str]) -> LLMClient:
        return LLMClient(
            api_key=api_key,
            base_url=self.config.venice_base_url,
            model=model,
            character=character,
            timeout_sec=self.config.llm_timeout_sec,
        )

    def _default_object_store(self, github: Dict[str, Any]) -> GitHubObjectStore:
        return GitHubObjectStore.from_config(github, self.activity, api_url=self.config.github_api_url)

    async def startup(self) -> None:
        created = await self.users.ensure_admin(self.config.admin_username, self.config.admin_password)
        if created is not None:
            self.log.info(f"Bootstrapped admin user '{created.username}'.")
        await self.session_store.load()
        try:
            stored = await self.config_store.load()
        except ConfigError as exc:
            self.log.warn(f"Ignoring encrypted config: {exc}")
            stored = {}
        github = stored.get("github") if isinstance(stored.get("github"), dict) else {}
        self.github_defaults = {k: github.get(k) for k in ("owner", "repo", "branch") if github.get(k)}
        self.log.info(f"Storage ready at {self.config.storage_dir}")
