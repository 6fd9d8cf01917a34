import os
from pathlib import Path
from typing import Optional


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or "").strip()


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = _env_str(name, str(default))
    try:
        value = int(raw)
    except (TypeError, ValueError):
        value = default
    return max(minimum, value)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env_str(name).lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return default


class AppConfig:
    def __init__(self, storage_dir: Optional[str] = None) -> None:
        base = storage_dir or _env_str("BITCORE_STORAGE_DIR")
        self.storage_dir = Path(base).expanduser() if base else Path.home() / ".bitcore-terminal"
        self.config_secret = _env_str("BITCORE_CONFIG_SECRET")
        self.brave_search_url = _env_str(
            "BRAVE_SEARCH_URL", "https://api.search.brave.com/res/v1/web/search"
        )
        self.venice_base_url = _env_str("VENICE_BASE_URL", "https://api.venice.ai/api/v1").rstrip("/")
        self.github_api_url = _env_str("GITHUB_API_URL", "https://api.github.com").rstrip("/")
        self.brave_api_key = _env_str("BRAVE_API_KEY")
        self.venice_api_key = _env_str("VENICE_API_KEY")
        self.prompt_timeout_sec = _env_int("PROMPT_TIMEOUT_SEC", 120)
        self.session_inactivity_timeout_sec = _env_int("SESSION_INACTIVITY_TIMEOUT_SEC", 3600)
        self.session_sweep_interval_sec = _env_int("SESSION_SWEEP_INTERVAL_SEC", 300)
        self.status_refresh_interval_sec = _env_int("STATUS_REFRESH_INTERVAL_SEC", 60)
        self.api_probe_timeout_sec = _env_int("API_PROBE_TIMEOUT_SEC", 7)
        self.csrf_ttl_sec = _env_int("CSRF_TTL_SEC", 900)
        self.csrf_required = _env_bool("CSRF_REQUIRED")
        self.llm_timeout_sec = _env_int("LLM_TIMEOUT_SEC", 30)
        self.research_budget_sec = _env_int("RESEARCH_BUDGET_SEC", 600)
        self.research_max_depth = _env_int("RESEARCH_MAX_DEPTH", 6)
        self.research_max_breadth = _env_int("RESEARCH_MAX_BREADTH", 6)
        self.research_learnings_budget_chars = _env_int("RESEARCH_LEARNINGS_BUDGET_CHARS", 12000)
        self.admin_username = _env_str("BITCORE_ADMIN_USER", "operator") or "operator"
        self.admin_password = _env_str("BITCORE_ADMIN_PASSWORD")
        self.debug = _env_bool("DEBUG_MODE")
        self.host = _env_str("HOST", "127.0.0.1") or "127.0.0.1"
        self.port = _env_int("PORT", 3000)

    @property
    def users_dir(self) -> Path:
        return self.storage_dir / "users"

    @property
    def session_file(self) -> Path:
        return self.storage_dir / "sessions" / "session.json"

    @property
    def config_file(self) -> Path:
        return self.storage_dir / "config.enc.json"

    @property
    def research_dir(self) -> Path:
        return self.storage_dir / "research"

    @property
    def memory_dir(self) -> Path:
        return self.storage_dir / "memory"
