"""Shared data models for the streaming chat pipeline.

Server side: conversation turns, sessions, backend chunks and the typed
stream events the controller emits.  Client side: messages and the content
block tree the assembler builds.  Both sides share the wire codec
(to_wire / parse_wire_event) for the events.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, ClassVar, Literal
from uuid import uuid4

if TYPE_CHECKING:
    from localchat.api.controller import CancellationToken

logger = logging.getLogger(__name__)

# Tool name whose blocks may carry nested tool invocations
TASK_TOOL_NAME = "Task"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Server-side conversation state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConversationTurn:
    """A committed turn of conversation history."""

    role: Literal["system", "user", "assistant"]
    content: str

    def to_backend(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class Session:
    """A conversation: ordered history plus at most one live generation."""

    id: str
    history: list[ConversationTurn] = field(default_factory=list)
    active: CancellationToken | None = None


@dataclass
class ChatRequest:
    """Client -> server ``chat`` message."""

    content: str | list[dict[str, Any]]
    session_id: str = "default"
    model: str | None = None

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> ChatRequest:
        # HTTP callers may use "message" / "session_id"
        return cls(
            content=data.get("content") or data.get("message") or "",
            session_id=data.get("sessionId") or data.get("session_id") or "default",
            model=data.get("model") or None,
        )

    @property
    def text(self) -> str:
        """User text; for block content, the first text block."""
        if isinstance(self.content, str):
            return self.content
        for block in self.content:
            if isinstance(block, dict) and block.get("type") == "text":
                return str(block.get("text") or "")
        return ""


@dataclass
class ChatChunk:
    """One record of the backend's newline-delimited chat stream."""

    content: str = ""
    thinking: str = ""
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    done: bool = False
    eval_count: int | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> ChatChunk:
        message = record.get("message") or {}
        if not isinstance(message, dict):
            message = {}
        return cls(
            content=message.get("content") or "",
            thinking=message.get("thinking") or "",
            tool_calls=list(message.get("tool_calls") or []),
            done=bool(record.get("done", False)),
            eval_count=record.get("eval_count"),
        )


@dataclass
class ModelInfo:
    """An installed model as reported by the backend."""

    id: str
    name: str
    size: int = 0
    modified_at: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> ModelInfo:
        name = record.get("name") or record.get("model") or ""
        return cls(
            id=record.get("model") or name,
            name=name,
            size=record.get("size") or 0,
            modified_at=record.get("modified_at") or "",
            details=record.get("details") or {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "size": self.size,
            "modified_at": self.modified_at,
            "details": self.details,
        }


# ---------------------------------------------------------------------------
# Stream events (server -> client wire protocol)
# ---------------------------------------------------------------------------


@dataclass
class TextDelta:
    type: ClassVar[str] = "assistant_message"
    text: str

    def to_wire(self, session_id: str) -> dict[str, Any]:
        return {"type": self.type, "content": self.text, "sessionId": session_id}


@dataclass
class ThinkingStart:
    type: ClassVar[str] = "thinking_start"

    def to_wire(self, session_id: str) -> dict[str, Any]:
        return {"type": self.type, "sessionId": session_id}


@dataclass
class ThinkingDelta:
    type: ClassVar[str] = "thinking_delta"
    text: str

    def to_wire(self, session_id: str) -> dict[str, Any]:
        return {"type": self.type, "content": self.text, "sessionId": session_id}


@dataclass
class ToolUse:
    type: ClassVar[str] = "tool_use"
    tool_id: str
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)

    def to_wire(self, session_id: str) -> dict[str, Any]:
        return {
            "type": self.type,
            "toolId": self.tool_id,
            "toolName": self.tool_name,
            "toolInput": self.tool_input,
            "sessionId": session_id,
        }


@dataclass
class TokenCountUpdate:
    type: ClassVar[str] = "token_update"
    count: int

    def to_wire(self, session_id: str) -> dict[str, Any]:
        return {"type": self.type, "outputTokens": self.count, "sessionId": session_id}


@dataclass
class Result:
    """Terminal success."""

    type: ClassVar[str] = "result"

    def to_wire(self, session_id: str) -> dict[str, Any]:
        return {"type": self.type, "sessionId": session_id}


@dataclass
class ErrorEvent:
    type: ClassVar[str] = "error"
    message: str
    kind: str = "unknown_error"

    def to_wire(self, session_id: str) -> dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "errorType": self.kind,
            "sessionId": session_id,
        }


@dataclass
class RetryAttempt:
    type: ClassVar[str] = "retry_attempt"
    attempt: int
    max_attempts: int
    kind: str = ""
    message: str = ""

    def to_wire(self, session_id: str) -> dict[str, Any]:
        return {
            "type": self.type,
            "attempt": self.attempt,
            "maxAttempts": self.max_attempts,
            "message": self.message,
            "errorType": self.kind,
            "sessionId": session_id,
        }


@dataclass
class TimeoutWarning:
    type: ClassVar[str] = "timeout_warning"
    elapsed_seconds: int
    message: str = ""

    def to_wire(self, session_id: str) -> dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "elapsedSeconds": self.elapsed_seconds,
            "sessionId": session_id,
        }


StreamEvent = (
    TextDelta
    | ThinkingStart
    | ThinkingDelta
    | ToolUse
    | TokenCountUpdate
    | Result
    | ErrorEvent
    | RetryAttempt
    | TimeoutWarning
)


def parse_wire_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse a server -> client wire dict into a StreamEvent.

    Unknown or missing types return None so newer servers never break
    older clients.  So do known types whose numeric fields are not numbers.
    """
    try:
        return _build_wire_event(data.get("type"), data)
    except (TypeError, ValueError) as e:
        logger.warning("Dropping malformed %s event: %s", data.get("type"), e)
        return None


def _build_wire_event(event_type: Any, data: dict[str, Any]) -> StreamEvent | None:
    if event_type == "assistant_message":
        return TextDelta(text=str(data.get("content") or ""))
    if event_type == "thinking_start":
        return ThinkingStart()
    if event_type == "thinking_delta":
        return ThinkingDelta(text=str(data.get("content") or ""))
    if event_type == "tool_use":
        tool_input = data.get("toolInput")
        return ToolUse(
            tool_id=str(data.get("toolId") or ""),
            tool_name=str(data.get("toolName") or ""),
            tool_input=tool_input if isinstance(tool_input, dict) else {},
        )
    if event_type == "token_update":
        return TokenCountUpdate(count=int(data.get("outputTokens") or 0))
    if event_type == "result":
        return Result()
    if event_type == "error":
        # Older servers send "error" instead of "message"
        message = data.get("message") or data.get("error") or "An error occurred"
        return ErrorEvent(message=str(message), kind=str(data.get("errorType") or "unknown_error"))
    if event_type == "retry_attempt":
        return RetryAttempt(
            attempt=int(data.get("attempt") or 0),
            max_attempts=int(data.get("maxAttempts") or 0),
            kind=str(data.get("errorType") or ""),
            message=str(data.get("message") or ""),
        )
    if event_type == "timeout_warning":
        return TimeoutWarning(
            elapsed_seconds=int(data.get("elapsedSeconds") or 0),
            message=str(data.get("message") or ""),
        )
    return None


# ---------------------------------------------------------------------------
# Client-side message tree
# ---------------------------------------------------------------------------


@dataclass
class TextBlock:
    text: str
    type: ClassVar[str] = "text"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass
class ThinkingBlock:
    thinking: str = ""
    type: ClassVar[str] = "thinking"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "thinking": self.thinking}


@dataclass
class ToolUseBlock:
    """A tool invocation.  Only "Task" blocks carry nested_tools."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    nested_tools: list[ToolUseBlock] | None = None
    type: ClassVar[str] = "tool_use"

    @classmethod
    def create(cls, tool_id: str, name: str, tool_input: dict[str, Any]) -> ToolUseBlock:
        return cls(
            id=tool_id,
            name=name,
            input=tool_input,
            nested_tools=[] if name == TASK_TOOL_NAME else None,
        )

    @property
    def is_task(self) -> bool:
        return self.name == TASK_TOOL_NAME

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "id": self.id,
            "name": self.name,
            "input": self.input,
        }
        if self.nested_tools is not None:
            data["nestedTools"] = [t.to_dict() for t in self.nested_tools]
        return data


@dataclass
class ImageBlock:
    media_type: str
    data: str
    type: ClassVar[str] = "image"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "source": {"type": "base64", "media_type": self.media_type, "data": self.data},
        }


@dataclass
class DocumentBlock:
    name: str
    data: str
    type: ClassVar[str] = "document"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "name": self.name, "data": self.data}


ContentBlock = TextBlock | ThinkingBlock | ToolUseBlock | ImageBlock | DocumentBlock


@dataclass
class Message:
    """A chat message as held by the client."""

    type: Literal["user", "assistant"]
    content: list[ContentBlock] | str
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: str = field(default_factory=_now_iso)
    finalized: bool = False

    @property
    def blocks(self) -> list[ContentBlock]:
        return self.content if isinstance(self.content, list) else []

    def to_dict(self) -> dict[str, Any]:
        content: Any = self.content
        if isinstance(content, list):
            content = [b.to_dict() for b in content]
        return {
            "id": self.id,
            "type": self.type,
            "content": content,
            "timestamp": self.timestamp,
        }
