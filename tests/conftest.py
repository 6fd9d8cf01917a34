import pytest

from research_terminal.config import AppConfig

_ENV_VARS = (
    "BITCORE_STORAGE_DIR",
    "BITCORE_CONFIG_SECRET",
    "BRAVE_API_KEY",
    "VENICE_API_KEY",
    "BITCORE_ADMIN_PASSWORD",
    "CSRF_REQUIRED",
    "DEBUG_MODE",
    "BRAVE_SEARCH_URL",
    "VENICE_BASE_URL",
    "GITHUB_API_URL",
    "PROMPT_TIMEOUT_SEC",
    "SESSION_INACTIVITY_TIMEOUT_SEC",
)


@pytest.fixture
def config(tmp_path, monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return AppConfig(storage_dir=str(tmp_path / "storage"))
