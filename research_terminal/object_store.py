import base64
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from research_terminal.errors import NotConfigured, ProviderError, ValidationError
from research_terminal.log_channel import ActivityChannel


def validate_repo_path(path: Any, allow_empty: bool = False) -> str:
    text = str(path or "").strip()
    if not text:
        if allow_empty:
            return ""
        raise ValidationError("Repository path must not be empty.")
    if text.startswith("/") or text.startswith("\\"):
        raise ValidationError(f"Repository path must be relative: {text}")
    segments = [s for s in text.replace("\\", "/").split("/")]
    if any(s == ".." for s in segments):
        raise ValidationError(f"Repository path must not contain '..': {text}")
    return "/".join(s for s in segments if s and s != ".")


class GitHubObjectStore:
    """Repo-relative file access over the GitHub contents API.

    Every call records an entry in the activity channel, successes at
    ``info`` and failures at ``error`` with the exception attached.
    """

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        activity: ActivityChannel,
        branch: str = "main",
        api_url: str = "https://api.github.com",
        timeout_sec: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not owner or not repo:
            raise NotConfigured("GitHub owner/repo not configured. Use /github-config to set them.")
        if not token:
            raise NotConfigured("GitHub token not configured. Use /github-config --token=<token>.")
        self.owner = owner
        self.repo = repo
        self.branch = branch or "main"
        self.api_url = api_url.rstrip("/")
        self.activity = activity
        self._token = token
        self._timeout = timeout_sec
        self._transport = transport

    @classmethod
    def from_config(cls, config: Dict[str, Any], activity: ActivityChannel, **kwargs: Any) -> "GitHubObjectStore":
        return cls(
            owner=str(config.get("owner") or ""),
            repo=str(config.get("repo") or ""),
            token=str(config.get("token") or ""),
            branch=str(config.get("branch") or "main"),
            activity=activity,
            **kwargs,
        )

    @property
    def repo_label(self) -> str:
        return f"{self.owner}/{self.repo}"

    def describe(self) -> Dict[str, Any]:
        return {"owner": self.owner, "repo": self.repo, "branch": self.branch}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )

    def _contents_url(self, path: str) -> str:
        return f"/repos/{self.owner}/{self.repo}/contents/{quote(path)}"

    @staticmethod
    def _raise_for(rsp: httpx.Response, action: str) -> None:
        if rsp.status_code < 400:
            return
        detail = ""
        try:
            body = rsp.json()
            detail = str(body.get("message") or "") if isinstance(body, dict) else ""
        except ValueError:
            detail = rsp.text[:200]
        raise ProviderError(
            f"GitHub {action} failed (HTTP {rsp.status_code}){': ' + detail if detail else ''}",
            status=rsp.status_code,
            transient=rsp.status_code >= 500,
        )

    def _fail(self, action: str, message: str, exc: Exception, meta: Optional[Dict[str, Any]] = None) -> None:
        self.activity.record(action, message, level="error", meta={**(meta or {}), "error": exc})

    # -- operations --------------------------------------------------------

    async def verify(self) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                rsp = await client.get(f"/repos/{self.owner}/{self.repo}")
                self._raise_for(rsp, "verify")
        except Exception as exc:
            self._fail("verify", f"Failed to verify {self.repo_label}", exc, {"repo": self.repo_label})
            raise
        data = rsp.json()
        config = {**self.describe(), "defaultBranch": data.get("default_branch"), "private": data.get("private")}
        self.activity.record("verify", f"Verified access to {self.repo_label}", meta={"repo": self.repo_label})
        return {"ok": True, "config": config}

    async def list_entries(self, path: str = "", ref: Optional[str] = None) -> Dict[str, Any]:
        clean = validate_repo_path(path, allow_empty=True)
        use_ref = ref or self.branch
        try:
            async with self._client() as client:
                rsp = await client.get(self._contents_url(clean), params={"ref": use_ref})
                self._raise_for(rsp, "list")
        except Exception as exc:
            self._fail("list", f"Failed to list /{clean}", exc, {"path": clean, "ref": use_ref})
            raise
        data = rsp.json()
        items = data if isinstance(data, list) else [data]
        entries: List[Dict[str, Any]] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            entries.append(
                {
                    "name": item.get("name"),
                    "path": item.get("path"),
                    "type": "dir" if item.get("type") == "dir" else "file",
                    "size": item.get("size"),
                    "sha": item.get("sha"),
                }
            )
        self.activity.record(
            "list", f"Listed {len(entries)} entries in /{clean}", meta={"path": clean, "ref": use_ref, "count": len(entries)}
        )
        return {"path": clean, "ref": use_ref, "entries": entries}

    async def _lookup_sha(self, client: httpx.AsyncClient, path: str, branch: str) -> Optional[str]:
        rsp = await client.get(self._contents_url(path), params={"ref": branch})
        if rsp.status_code == 404:
            return None
        self._raise_for(rsp, "lookup")
        data = rsp.json()
        return data.get("sha") if isinstance(data, dict) else None

    async def exists(self, path: str, ref: Optional[str] = None) -> bool:
        clean = validate_repo_path(path)
        async with self._client() as client:
            return bool(await self._lookup_sha(client, clean, ref or self.branch))

    async def fetch_file(self, path: str, ref: Optional[str] = None) -> Dict[str, Any]:
        clean = validate_repo_path(path)
        use_ref = ref or self.branch
        try:
            async with self._client() as client:
                rsp = await client.get(self._contents_url(clean), params={"ref": use_ref})
                self._raise_for(rsp, "fetch")
            data = rsp.json()
            if not isinstance(data, dict) or data.get("type") != "file":
                raise ValidationError(f"Not a file: {clean}")
            content = base64.b64decode(str(data.get("content") or "")).decode("utf-8")
        except Exception as exc:
            self._fail("fetch", f"Failed to fetch {clean}", exc, {"path": clean, "ref": use_ref})
            raise
        self.activity.record("fetch", f"Fetched {clean}", meta={"path": clean, "ref": use_ref, "size": data.get("size")})
        return {"path": clean, "content": content, "sha": data.get("sha"), "size": data.get("size"), "ref": use_ref}

    async def _put(self, client: httpx.AsyncClient, path: str, content: str, message: str, branch: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        sha = await self._lookup_sha(client, path, branch)
        if sha:
            body["sha"] = sha
        rsp = await client.put(self._contents_url(path), json=body)
        self._raise_for(rsp, "upload")
        data = rsp.json()
        commit = data.get("commit") or {}
        file_info = data.get("content") or {}
        return {"path": path, "commitUrl": commit.get("html_url"), "fileUrl": file_info.get("html_url"), "updated": bool(sha)}

    async def upload_file(self, path: str, content: str, message: Optional[str] = None, branch: Optional[str] = None) -> Dict[str, Any]:
        clean = validate_repo_path(path)
        use_branch = branch or self.branch
        commit_message = message or f"Add {clean}"
        try:
            async with self._client() as client:
                summary = await self._put(client, clean, content, commit_message, use_branch)
        except Exception as exc:
            self._fail("upload", f"Failed to upload {clean}", exc, {"path": clean, "branch": use_branch})
            raise
        self.activity.record(
            "upload", f"Uploaded {clean}", meta={"path": clean, "branch": use_branch, "commitUrl": summary["commitUrl"]}
        )
        return {"summary": summary}

    async def push_batch(self, files: List[Dict[str, str]], message: str, branch: Optional[str] = None) -> Dict[str, Any]:
        use_branch = branch or self.branch
        prepared = [(validate_repo_path(f.get("path")), str(f.get("content") or "")) for f in files]
        summaries: List[Dict[str, Any]] = []
        try:
            async with self._client() as client:
                for path, content in prepared:
                    summaries.append(await self._put(client, path, content, message, use_branch))
        except Exception as exc:
            self._fail(
                "batch",
                f"Batch upload failed after {len(summaries)} of {len(prepared)} files",
                exc,
                {"branch": use_branch, "completed": len(summaries)},
            )
            raise
        self.activity.record("batch", f"Uploaded {len(summaries)} files", meta={"branch": use_branch, "count": len(summaries)})
        return {"ok": True, "summaries": summaries}

    async def delete_file(self, path: str, branch: Optional[str] = None, message: Optional[str] = None) -> Dict[str, Any]:
        clean = validate_repo_path(path)
        use_branch = branch or self.branch
        try:
            async with self._client() as client:
                sha = await self._lookup_sha(client, clean, use_branch)
                if not sha:
                    raise ValidationError(f"File not found: {clean}")
                rsp = await client.request(
                    "DELETE",
                    self._contents_url(clean),
                    json={"message": message or f"Delete {clean}", "sha": sha, "branch": use_branch},
                )
                self._raise_for(rsp, "delete")
            commit = (rsp.json() or {}).get("commit") or {}
        except Exception as exc:
            self._fail("delete", f"Failed to delete {clean}", exc, {"path": clean, "branch": use_branch})
            raise
        self.activity.record("delete", f"Deleted {clean}", meta={"path": clean, "branch": use_branch})
        return {"summary": {"path": clean, "commitUrl": commit.get("html_url")}}
