"""Pydantic schemas for conversations, model configs and chat exchanges."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from chatrelay.core.errors import UnsupportedProviderError


Role = Literal["user", "assistant", "system", "tool"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Attachment(BaseModel):
    """Metadata of one uploaded file kept on the user turn."""
    filename: str
    path: str
    mimetype: str


class ChatTurn(BaseModel):
    """One role-tagged message in a conversation."""
    role: Role
    content: str = ""
    attachments: List[Attachment] = Field(default_factory=list)
    images: List[str] = Field(default_factory=list)
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("content", mode="before")
    @classmethod
    def _none_is_empty(cls, value):
        return "" if value is None else value


class SessionSummary(BaseModel):
    sessionId: str
    createdAt: datetime
    title: str


class SessionDefaults(BaseModel):
    """Fields written only when the session document is first created."""
    model: str
    title: str
    userId: Optional[str] = None


class ProviderKind(str, Enum):
    """Wire-protocol families an adapter exists for."""
    LOCAL_COMPLETION = "local-completion"
    OPENAI_COMPATIBLE = "openai-compatible"

    @classmethod
    def parse(cls, value: str) -> "ProviderKind":
        """Map a stored provider name onto a supported kind."""
        kind = _PROVIDER_ALIASES.get((value or "").strip().lower())
        if kind is None:
            raise UnsupportedProviderError(value)
        return kind


_PROVIDER_ALIASES = {
    "local-completion": ProviderKind.LOCAL_COMPLETION,
    "ollama": ProviderKind.LOCAL_COMPLETION,
    "openai-compatible": ProviderKind.OPENAI_COMPATIBLE,
    "openai": ProviderKind.OPENAI_COMPATIBLE,
    "custom": ProviderKind.OPENAI_COMPATIBLE,
}


class ProviderConfig(BaseModel):
    """Snapshot of one reachable model endpoint."""
    displayName: str
    modelIdentifier: str
    providerKind: str = ProviderKind.LOCAL_COMPLETION.value
    baseUrl: str
    encryptedApiKey: Optional[str] = None
    contextWindowTokens: int = 4096
    isActive: bool = True


class UpstreamTarget(BaseModel):
    """Resolved config plus the decrypted credential for one request."""
    config: ProviderConfig
    apiKey: Optional[str] = None


class AttachmentFile(BaseModel):
    """An uploaded file already written to disk by the transport layer."""
    filename: str
    path: str
    mimetype: str

    @property
    def is_image(self) -> bool:
        return self.mimetype.startswith("image/")


class ChatExchangeRequest(BaseModel):
    """Validated input of one chat exchange."""
    model: str
    prior_turns: List[ChatTurn] = Field(default_factory=list)
    session_id: Optional[str] = None
    attachment_files: List[AttachmentFile] = Field(default_factory=list)
    caller_user_id: Optional[str] = None
    personalization_prompt: Optional[str] = None
