import asyncio
import hashlib
import json
import re

import httpx
import pytest
from fakes import FakeClock

from research_terminal.errors import (
    AuthError,
    InvalidService,
    NotConfigured,
    RateLimited,
    UserNotFound,
    ValidationError,
)
from research_terminal.user_store import UserStore


def test_create_and_authenticate(config):
    store = UserStore(config)

    async def scenario():
        await store.create_user("alice", "pw1")
        return await store.authenticate("alice", "pw1")

    record = asyncio.run(scenario())
    assert record.username == "alice"
    assert record.role == "client"
    on_disk = json.loads((config.users_dir / "alice.json").read_text(encoding="utf-8"))
    assert on_disk["passwordHash"].startswith("$argon2")
    assert "pw1" not in json.dumps(on_disk)


def test_duplicate_user_and_bad_names_are_rejected(config):
    store = UserStore(config)

    async def scenario():
        await store.create_user("alice", "pw1")
        with pytest.raises(ValidationError):
            await store.create_user("alice", "pw2")
        with pytest.raises(ValidationError):
            await store.create_user("../evil", "pw")
        with pytest.raises(UserNotFound):
            await store.get_user_data("bob")

    asyncio.run(scenario())


def test_public_profile_is_never_loaded_from_disk(config):
    record = asyncio.run(UserStore(config).get_user_data("public"))
    assert record.role == "public"


def test_sixth_failed_login_is_rate_limited(config):
    clock = FakeClock()
    store = UserStore(config, clock=clock)

    async def scenario():
        await store.create_user("alice", "pw1")
        for _ in range(5):
            with pytest.raises(AuthError):
                await store.authenticate("alice", "wrong")
            clock.advance(2)
        with pytest.raises(RateLimited) as info:
            await store.authenticate("alice", "wrong")
        return str(info.value)

    message = asyncio.run(scenario())
    assert re.search(r"Too many failed attempts.*\d+ minutes", message)


def test_lockout_expires_and_correct_password_resets(config):
    clock = FakeClock()
    store = UserStore(config, clock=clock)

    async def scenario():
        await store.create_user("alice", "pw1")
        for _ in range(5):
            with pytest.raises(AuthError):
                await store.authenticate("alice", "wrong")
        with pytest.raises(RateLimited):
            await store.authenticate("alice", "pw1")
        clock.advance(16 * 60)
        return await store.authenticate("alice", "pw1")

    assert asyncio.run(scenario()).username == "alice"


def test_password_change_re_encrypts_keys(config):
    store = UserStore(config)

    async def scenario():
        await store.create_user("alice", "pw1")
        await store.set_api_key("brave", "K1", "pw1", "alice")
        await store.set_github_config("alice", "pw1", owner="acme", repo="notes", token="ghp_x")
        await store.change_password("alice", "pw1", "pw2")
        brave = await store.get_api_key("alice", "pw2", "brave")
        github = await store.get_github_config("alice", "pw2")
        with pytest.raises(AuthError):
            await store.get_api_key("alice", "pw1", "brave")
        return brave, github

    brave, github = asyncio.run(scenario())
    assert brave == "K1"
    assert github == {"owner": "acme", "repo": "notes", "branch": "main", "token": "ghp_x"}


def test_concurrent_key_writes_are_serialized(config):
    store = UserStore(config)

    async def scenario():
        await store.create_user("alice", "pw1")
        await asyncio.gather(
            store.set_api_key("brave", "B1", "pw1", "alice"),
            store.set_api_key("venice", "V1", "pw1", "alice"),
        )
        return (
            await store.get_api_key("alice", "pw1", "brave"),
            await store.get_api_key("alice", "pw1", "venice"),
        )

    assert asyncio.run(scenario()) == ("B1", "V1")


def test_clearing_and_missing_keys(config):
    store = UserStore(config)

    async def scenario():
        await store.create_user("alice", "pw1")
        await store.set_api_key("venice", "V1", "pw1", "alice")
        assert await store.has_api_key("alice", "venice")
        await store.set_api_key("venice", None, "pw1", "alice")
        assert not await store.has_api_key("alice", "venice")
        with pytest.raises(NotConfigured):
            await store.get_api_key("alice", "pw1", "venice")
        with pytest.raises(InvalidService):
            await store.set_api_key("openai", "x", "pw1", "alice")

    asyncio.run(scenario())


def test_legacy_sha256_hash_is_upgraded_on_login(config):
    store = UserStore(config)
    config.users_dir.mkdir(parents=True)
    legacy = {
        "username": "carol",
        "role": "client",
        "passwordHash": hashlib.sha256(b"old-pw").hexdigest(),
    }
    (config.users_dir / "carol.json").write_text(json.dumps(legacy), encoding="utf-8")

    record = asyncio.run(store.authenticate("carol", "old-pw"))
    assert record.password_hash.startswith("$argon2")
    assert record.salt
    on_disk = json.loads((config.users_dir / "carol.json").read_text(encoding="utf-8"))
    assert on_disk["passwordHash"].startswith("$argon2")


def test_ensure_admin_only_creates_once(config):
    store = UserStore(config)

    async def scenario():
        first = await store.ensure_admin("operator", "adminpw")
        second = await store.ensure_admin("operator", "adminpw")
        skipped = await store.ensure_admin("nobody", "")
        return first, second, skipped

    first, second, skipped = asyncio.run(scenario())
    assert first.role == "admin"
    assert second is None
    assert skipped is None


def test_api_key_probes(config):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen[request.url.host] = request.headers
        if request.url.host == "api.search.brave.com":
            return httpx.Response(200, json={})
        return httpx.Response(401, json={"error": "bad key"})

    store = UserStore(config, transport=httpx.MockTransport(handler))

    async def scenario():
        await store.create_user("alice", "pw1")
        await store.set_api_key("brave", "B1", "pw1", "alice")
        await store.set_api_key("venice", "V1", "pw1", "alice")
        return await store.test_api_keys("pw1", "alice")

    results = asyncio.run(scenario())
    assert results["brave"] == {"success": True}
    assert results["venice"] == {"success": False, "error": "HTTP 401"}
    assert results["github"]["success"] is None
    assert seen["api.search.brave.com"]["x-subscription-token"] == "B1"
    assert seen["api.venice.ai"]["authorization"] == "Bearer V1"


def test_hashing_and_key_derivation_run_in_worker_threads(config, monkeypatch):
    store = UserStore(config)
    offloaded = []
    real_to_thread = asyncio.to_thread

    async def recording_to_thread(fn, *args, **kwargs):
        offloaded.append(getattr(fn, "__name__", repr(fn)))
        return await real_to_thread(fn, *args, **kwargs)

    monkeypatch.setattr(asyncio, "to_thread", recording_to_thread)

    async def scenario():
        await store.create_user("alice", "pw1")
        await store.set_api_key("brave", "brave-key", "pw1", "alice")
        return await store.get_api_key("alice", "pw1", "brave")

    assert asyncio.run(scenario()) == "brave-key"
    assert "hash" in offloaded
    assert "_verify_hash" in offloaded
    assert offloaded.count("derive_key") == 2
