import asyncio
import hashlib
import json
import math
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from research_terminal.config import AppConfig
from research_terminal.crypto import decrypt, derive_key_async, encrypt, generate_salt
from research_terminal.errors import (
    DecryptionFailed,
    InvalidService,
    KeyMigrationFailed,
    NotConfigured,
    RateLimited,
    UserNotFound,
    ValidationError,
    WrongPassword,
)
from research_terminal.models import UserRecord

PWD = PasswordHasher()

API_SERVICES = ("brave", "venice")
SECRET_SERVICES = ("brave", "venice", "github")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_legacy_sha256_hash(value: Optional[str]) -> bool:
    if not value or len(value) != 64:
        return False
    return all(ch in "0123456789abcdef" for ch in value.lower())


async def hash_password(password: str) -> str:
    return await asyncio.to_thread(PWD.hash, password)


def public_user() -> UserRecord:
    return UserRecord(username="public", role="public")


class UserStore:
    """Password-gated user records with encrypted per-service secrets."""

    _MAX_FAILED_ATTEMPTS = 5
    _FAILURE_WINDOW_SEC = 15 * 60
    _BASE_LOCKOUT_SEC = 15 * 60

    def __init__(
        self,
        config: AppConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.users_dir = Path(config.users_dir)
        self._transport = transport
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._failures: Dict[str, List[float]] = {}
        self._failure_totals: Dict[str, int] = {}
        self._locked_until: Dict[str, float] = {}

    # -- records -----------------------------------------------------------

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
        return self.users_dir / f"{name.lower()}.json"

    def _read_record(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        raw = json.loads(path.read_text(encoding="utf-8"))
        return raw if isinstance(raw, dict) else None

    def _write_record(self, path: Path, payload: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(path)

    async def get_user_data(self, username: str) -> UserRecord:
        if str(username or "").strip().lower() == "public":
            return public_user()
        path = self._path_for(username)
        raw = await asyncio.to_thread(self._read_record, path)
        if raw is None:
            raise UserNotFound(f"User '{username}' not found.")
        return UserRecord.model_validate(raw)

    async def save_user_data(self, record: UserRecord) -> UserRecord:
        if record.role == "public":
            raise ValidationError("The public profile cannot be persisted.")
        path = self._path_for(record.username)
        await asyncio.to_thread(self._write_record, path, record.to_disk())
        return record

    async def user_exists(self, username: str) -> bool:
        try:
            path = self._path_for(username)
        except ValidationError:
            return False
        return await asyncio.to_thread(path.exists)

    async def create_user(self, username: str, password: str, role: str = "client") -> UserRecord:
        if not str(password or ""):
            raise ValidationError("Password must not be empty.")
        if role not in {"admin", "client"}:
            raise ValidationError(f"Invalid role: {role}")
        async with self._lock_for(username):
            if await self.user_exists(username):
                raise ValidationError(f"User '{username}' already exists.")
            record = UserRecord(
                username=str(username).strip(),
                role=role,
                password_hash=await hash_password(password),
                salt=generate_salt(),
                created=_now_iso(),
                limits={},
            )
            await self.save_user_data(record)
        print(f"[secrets] Created user {record.username} ({role}).")
        return record

    async def ensure_admin(self, username: str, password: str) -> Optional[UserRecord]:
        if not password or await self.user_exists(username):
            return None
        return await self.create_user(username, password, role="admin")

    # -- authentication ----------------------------------------------------

    def _check_rate_limit(self, username: str) -> None:
        until = self._locked_until.get(username)
        if until is None:
            return
        remaining = until - self._clock()
        if remaining <= 0:
            self._locked_until.pop(username, None)
            return
        minutes = max(1, int(math.ceil(remaining / 60.0)))
        raise RateLimited(f"Too many failed attempts. Try again in {minutes} minutes.")

    def _record_failure(self, username: str) -> None:
        now = self._clock()
        recent = [t for t in self._failures.get(username, []) if now - t < self._FAILURE_WINDOW_SEC]
        recent.append(now)
        self._failures[username] = recent
        total = self._failure_totals.get(username, 0) + 1
        self._failure_totals[username] = total
        if len(recent) >= self._MAX_FAILED_ATTEMPTS:
            multiplier = max(1, total // self._MAX_FAILED_ATTEMPTS)
            lockout = self._BASE_LOCKOUT_SEC * (2 ** (multiplier - 1))
            self._locked_until[username] = now + lockout
            print(f"[secrets] Locking {username} for {lockout // 60} minutes after {total} failures.")

    @staticmethod
    def _verify_hash(stored: str, password: str) -> Tuple[bool, bool]:
        if stored.startswith("$argon2"):
            try:
                return bool(PWD.verify(stored, password)), PWD.check_needs_rehash(stored)
            except (VerifyMismatchError, VerificationError, InvalidHashError):
                return False, False
        if _is_legacy_sha256_hash(stored):
            valid = hashlib.sha256(str(password).encode("utf-8")).hexdigest() == stored.lower()
            return valid, valid
        return False, False

    def _reset_failures(self, username: str) -> None:
        self._failures.pop(username, None)
        self._failure_totals.pop(username, None)
        self._locked_until.pop(username, None)

    async def _authenticate_locked(self, username: str, password: str) -> UserRecord:
        key = str(username or "").strip().lower()
        self._check_rate_limit(key)
        try:
            record = await self.get_user_data(username)
        except (UserNotFound, ValidationError):
            self._record_failure(key)
            raise
        if record.role == "public":
            raise WrongPassword("The public profile cannot authenticate.")

        valid, needs_upgrade = await asyncio.to_thread(self._verify_hash, record.password_hash or "", password)
        if not valid:
            self._record_failure(key)
            raise WrongPassword("Invalid password.")

        self._reset_failures(key)
        updates: Dict[str, Any] = {}
        if needs_upgrade:
            updates["password_hash"] = await hash_password(password)
            print(f"[secrets] Upgraded password hash for {record.username}.")
        if not record.salt:
            if record.encrypted_api_keys or record.encrypted_github_token:
                raise DecryptionFailed("User record has encrypted secrets but no salt.")
            updates["salt"] = generate_salt()
        if updates:
            record = record.model_copy(update=updates)
            await self.save_user_data(record)
        return record

    async def authenticate(self, username: str, password: str) -> UserRecord:
        async with self._lock_for(str(username or "").strip().lower()):
            return await self._authenticate_locked(username, password)

    # -- secrets -----------------------------------------------------------

    async def set_api_key(self, service: str, value: Optional[str], password: str, username: str) -> UserRecord:
        svc = str(service or "").strip().lower()
        if svc not in API_SERVICES:
            raise InvalidService(f"Invalid service '{service}'. Use one of: {', '.join(API_SERVICES)}.")
        async with self._lock_for(str(username or "").strip().lower()):
            record = await self._authenticate_locked(username, password)
            keys = dict(record.encrypted_api_keys)
            text = str(value or "").strip()
            if text:
                keys[svc] = encrypt(text, await derive_key_async(password, record.salt or ""))
            else:
                keys.pop(svc, None)
            record = record.model_copy(update={"encrypted_api_keys": keys})
            await self.save_user_data(record)
        print(f"[secrets] {'Stored' if text else 'Cleared'} {svc} key for {record.username}.")
        return record

    async def get_api_key(self, username: str, password: str, service: str) -> str:
        svc = str(service or "").strip().lower()
        if svc not in SECRET_SERVICES:
            raise InvalidService(f"Invalid service '{service}'.")
        async with self._lock_for(str(username or "").strip().lower()):
            record = await self._authenticate_locked(username, password)
        ciphertext = record.encrypted_github_token if svc == "github" else record.encrypted_api_keys.get(svc)
        if ciphertext is None:
            raise NotConfigured(f"No {svc} key configured. Use /keys set {svc} to add one.")
        return decrypt(ciphertext, await derive_key_async(password, record.salt or ""))

    async def has_api_key(self, username: str, service: str) -> bool:
        try:
            record = await self.get_user_data(username)
        except (UserNotFound, ValidationError):
            return False
        if service == "github":
            return record.encrypted_github_token is not None
        return service in record.encrypted_api_keys

    async def set_github_config(
        self,
        username: str,
        password: str,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        branch: Optional[str] = None,
        token: Optional[str] = None,
    ) -> UserRecord:
        async with self._lock_for(str(username or "").strip().lower()):
            record = await self._authenticate_locked(username, password)
            updates: Dict[str, Any] = {}
            if owner is not None:
                updates["github_owner"] = str(owner).strip() or None
            if repo is not None:
                updates["github_repo"] = str(repo).strip() or None
            if branch is not None:
                updates["github_branch"] = str(branch).strip() or None
            if token is not None:
                text = str(token).strip()
                updates["encrypted_github_token"] = (
                    encrypt(text, await derive_key_async(password, record.salt or "")) if text else None
                )
            record = record.model_copy(update=updates)
            await self.save_user_data(record)
        return record

    async def get_github_config(self, username: str, password: str) -> Dict[str, Any]:
        async with self._lock_for(str(username or "").strip().lower()):
            record = await self._authenticate_locked(username, password)
        token = None
        if record.encrypted_github_token is not None:
            token = decrypt(record.encrypted_github_token, await derive_key_async(password, record.salt or ""))
        return {
            "owner": record.github_owner,
            "repo": record.github_repo,
            "branch": record.github_branch or "main",
            "token": token,
        }

    async def change_password(self, username: str, current: str, new: str) -> UserRecord:
        if not str(new or ""):
            raise ValidationError("New password must not be empty.")
        async with self._lock_for(str(username or "").strip().lower()):
            record = await self._authenticate_locked(username, current)
            old_key = await derive_key_async(current, record.salt or "")
            plain_keys: Dict[str, str] = {}
            for svc, ciphertext in record.encrypted_api_keys.items():
                try:
                    plain_keys[svc] = decrypt(ciphertext, old_key)
                except DecryptionFailed as exc:
                    raise KeyMigrationFailed(f"Could not decrypt stored {svc} key: {exc}") from exc
            github_token: Optional[str] = None
            if record.encrypted_github_token is not None:
                try:
                    github_token = decrypt(record.encrypted_github_token, old_key)
                except DecryptionFailed as exc:
                    print(f"[secrets] Dropping undecryptable GitHub token for {record.username}: {exc}")

            new_salt = generate_salt()
            new_key = await derive_key_async(new, new_salt)
            new_hash = await hash_password(new)
            record = record.model_copy(
                update={
                    "password_hash": new_hash,
                    "salt": new_salt,
                    "password_changed": _now_iso(),
                    "encrypted_api_keys": {svc: encrypt(v, new_key) for svc, v in plain_keys.items()},
                    "encrypted_github_token": encrypt(github_token, new_key) if github_token else None,
                }
            )
            await self.save_user_data(record)
        print(f"[secrets] Password changed for {record.username}; {len(plain_keys)} keys re-encrypted.")
        return record

    # -- provider probes ---------------------------------------------------

    async def _probe(self, client: httpx.AsyncClient, url: str, headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            rsp = await client.get(url, headers=headers)
        except httpx.TimeoutException:
            return {"success": False, "error": "Request timed out."}
        except httpx.HTTPError as exc:
            return {"success": False, "error": str(exc) or exc.__class__.__name__}
        if 200 <= rsp.status_code < 300:
            return {"success": True}
        return {"success": False, "error": f"HTTP {rsp.status_code}"}

    async def test_api_keys(self, password: str, username: str) -> Dict[str, Dict[str, Any]]:
        async with self._lock_for(str(username or "").strip().lower()):
            record = await self._authenticate_locked(username, password)
        key = await derive_key_async(password, record.salt or "")
        results: Dict[str, Dict[str, Any]] = {
            svc: {"success": None, "error": "Not configured"} for svc in SECRET_SERVICES
        }
        brave_ping = self.config.brave_search_url.rsplit("/", 1)[0] + "/ping"
        targets = {
            "brave": (record.encrypted_api_keys.get("brave"), brave_ping, "X-Subscription-Token", "{}"),
            "venice": (record.encrypted_api_keys.get("venice"), f"{self.config.venice_base_url}/models", "Authorization", "Bearer {}"),
            "github": (record.encrypted_github_token, f"{self.config.github_api_url}/user", "Authorization", "Bearer {}"),
        }
        timeout = float(self.config.api_probe_timeout_sec)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            pending = {}
            for svc, (ciphertext, url, header, template) in targets.items():
                if ciphertext is None:
                    continue
                try:
                    secret = decrypt(ciphertext, key)
                except DecryptionFailed as exc:
                    results[svc] = {"success": False, "error": str(exc)}
                    continue
                pending[svc] = self._probe(client, url, {header: template.format(secret)})
            outcomes = await asyncio.gather(*pending.values())
            for svc, outcome in zip(pending.keys(), outcomes):
                results[svc] = outcome
        return results
