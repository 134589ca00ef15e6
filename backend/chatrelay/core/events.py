"""Normalized upstream events shared by every provider adapter."""

from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field


class EventType(str, Enum):
    TEXT_DELTA = "text_delta"
    TOOL_CALL_REQUESTED = "tool_call_requested"
    COMPLETED = "completed"
    FAILED = "failed"


class TextDelta(BaseModel):
    """Incremental assistant text, concatenated in emission order."""

    type: Literal[EventType.TEXT_DELTA] = EventType.TEXT_DELTA
    text: str


class ToolCallRequested(BaseModel):
    """Upstream wants a tool result before it continues."""

    type: Literal[EventType.TOOL_CALL_REQUESTED] = EventType.TOOL_CALL_REQUESTED
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    call_id: Optional[str] = None


class Completed(BaseModel):
    type: Literal[EventType.COMPLETED] = EventType.COMPLETED


class Failed(BaseModel):
    """Terminal failure. Text already emitted stays valid partial output."""

    type: Literal[EventType.FAILED] = EventType.FAILED
    reason: str


ProviderEvent = Annotated[
    Union[TextDelta, ToolCallRequested, Completed, Failed],
    Field(discriminator="type"),
]
