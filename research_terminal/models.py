from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


Role = Literal["admin", "client", "public"]
SessionMode = Literal["command", "chat", "prompt"]
ApiService = Literal["brave", "venice"]


class Ciphertext(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    iv: str
    encrypted: str
    auth_tag: str = Field(alias="authTag")


class UserRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    username: str
    role: Role = "client"
    password_hash: Optional[str] = Field(default=None, alias="passwordHash")
    salt: Optional[str] = None
    password_changed: Optional[str] = Field(default=None, alias="passwordChanged")
    created: Optional[str] = None
    limits: Dict[str, Any] = Field(default_factory=dict)
    encrypted_api_keys: Dict[str, Ciphertext] = Field(default_factory=dict, alias="encryptedApiKeys")
    encrypted_github_token: Optional[Ciphertext] = Field(default=None, alias="encryptedGitHubToken")
    github_owner: Optional[str] = Field(default=None, alias="githubOwner")
    github_repo: Optional[str] = Field(default=None, alias="githubRepo")
    github_branch: Optional[str] = Field(default=None, alias="githubBranch")

    def to_disk(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def public_view(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "role": self.role,
            "githubOwner": self.github_owner,
            "githubRepo": self.github_repo,
            "githubBranch": self.github_branch or "main",
            "hasApiKeys": sorted(self.encrypted_api_keys.keys()),
            "hasGitHubToken": self.encrypted_github_token is not None,
        }


class SessionSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    version: int = 1
    current_research_result: Optional[str] = Field(default=None, alias="currentResearchResult")
    current_research_filename: Optional[str] = Field(default=None, alias="currentResearchFilename")
    current_research_summary: Optional[str] = Field(default=None, alias="currentResearchSummary")
    current_research_query: Optional[str] = Field(default=None, alias="currentResearchQuery")
    session_model: Optional[str] = Field(default=None, alias="sessionModel")
    session_character: Optional[str] = Field(default=None, alias="sessionCharacter")
    memory_enabled: bool = Field(default=False, alias="memoryEnabled")
    memory_depth: Optional[int] = Field(default=None, alias="memoryDepth")
    memory_github_enabled: bool = Field(default=False, alias="memoryGithubEnabled")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and value == "":
            return None
        return value

    @field_validator("memory_enabled", "memory_github_enabled", mode="before")
    @classmethod
    def _coerce_bool(cls, value: Any) -> bool:
        return bool(value)

    @field_validator("version", mode="after")
    @classmethod
    def _pin_version(cls, _value: int) -> int:
        return 1


class CommandMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["command"]
    command: str
    args: List[str] = Field(default_factory=list)
    password: Optional[str] = None
    csrf_token: Optional[str] = Field(default=None, alias="csrfToken")


class ChatMessage(BaseModel):
    type: Literal["chat-message"]
    message: str = ""


class InputMessage(BaseModel):
    type: Literal["input"]
    value: str = ""


class PingMessage(BaseModel):
    type: Literal["ping"]


class StatusRefreshMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["status-refresh"]
    validate_flag: Any = Field(default=None, alias="validate")


class ActivityCommandMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal["github-activity:command"]
    command: str = "snapshot"
    limit: Optional[int] = None
    levels: Optional[Union[str, List[str]]] = None
    since: Optional[Union[int, float, str]] = None
    since_sequence: Optional[int] = Field(default=None, alias="sinceSequence")
    search: Optional[str] = None
    sample: Optional[int] = None

    def filters(self) -> Dict[str, Any]:
        return {
            "limit": self.limit,
            "levels": self.levels,
            "since": self.since,
            "since_sequence": self.since_sequence,
            "search": self.search,
            "sample": self.sample,
        }


InboundMessage = Annotated[
    Union[
        CommandMessage,
        ChatMessage,
        InputMessage,
        PingMessage,
        StatusRefreshMessage,
        ActivityCommandMessage,
    ],
    Field(discriminator="type"),
]

INBOUND_TYPES = {
    "command",
    "chat-message",
    "input",
    "ping",
    "status-refresh",
    "github-activity:command",
}

inbound_adapter: TypeAdapter = TypeAdapter(InboundMessage)


class ModeChange(BaseModel):
    mode: SessionMode
    prompt: str = "> "


class HandlerOutcome(BaseModel):
    success: bool = True
    keep_disabled: bool = False
    mode_change: Optional[ModeChange] = None
    message: Optional[str] = None
    user: Optional[UserRecord] = None
