"""Client-side event-to-message assembler.

Consumes the ordered wire events of a generation and mutates a list of
Messages in place, one event at a time, in arrival order.  Text and
thinking deltas merge into their trailing block; tool invocations reported
while "Task" tools are active are distributed among those Tasks round
robin.

Rendering is not done here: a renderer reads ``messages`` after each
apply() returns.
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol

from localchat.api.models import (
    ContentBlock,
    DocumentBlock,
    ErrorEvent,
    ImageBlock,
    Message,
    Result,
    RetryAttempt,
    StreamEvent,
    TextBlock,
    TextDelta,
    ThinkingBlock,
    ThinkingDelta,
    ThinkingStart,
    TimeoutWarning,
    TokenCountUpdate,
    ToolUse,
    ToolUseBlock,
    parse_wire_event,
)

logger = logging.getLogger(__name__)

_DATA_URL = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)


class Notifier(Protocol):
    """Toast-style notifications shown next to the conversation."""

    def info(self, title: str, description: str = "") -> None: ...

    def warning(self, title: str, description: str = "") -> None: ...

    def error(self, title: str, description: str = "") -> None: ...


class LoggingNotifier:
    """Notifier that writes notifications to the log."""

    def info(self, title: str, description: str = "") -> None:
        logger.info("%s: %s", title, description)

    def warning(self, title: str, description: str = "") -> None:
        logger.warning("%s: %s", title, description)

    def error(self, title: str, description: str = "") -> None:
        logger.error("%s: %s", title, description)


@dataclass
class Attachment:
    """A file attached to a user message.

    ``preview`` is a data URL for images, or the file's text/base64 payload
    for documents.
    """

    name: str
    media_type: str
    preview: str


def build_user_content(
    text: str, attachments: list[Attachment] | None = None
) -> str | list[ContentBlock]:
    """Plain text, or text + image/document blocks when files are attached."""
    if not attachments:
        return text

    blocks: list[ContentBlock] = []
    if text.strip():
        blocks.append(TextBlock(text=text))
    for attachment in attachments:
        if not attachment.preview:
            continue
        if attachment.media_type.startswith("image/"):
            match = _DATA_URL.match(attachment.preview)
            if match:
                blocks.append(ImageBlock(media_type=match.group(1), data=match.group(2)))
        else:
            blocks.append(DocumentBlock(name=attachment.name, data=attachment.preview))
    return blocks


def image_attachment(name: str, media_type: str, data: bytes) -> Attachment:
    """Attachment for raw image bytes."""
    encoded = base64.b64encode(data).decode("ascii")
    return Attachment(name=name, media_type=media_type, preview=f"data:{media_type};base64,{encoded}")


class MessageAssembler:
    """Builds the message/content-block tree from streamed events."""

    def __init__(
        self,
        messages: list[Message] | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.messages: list[Message] = messages if messages is not None else []
        self.notifier: Notifier = notifier or LoggingNotifier()
        self.live_token_count = 0
        self.is_loading = False

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def add_user_message(
        self, text: str, attachments: list[Attachment] | None = None
    ) -> str | list[dict[str, Any]]:
        """Append the user's message and return the ``content`` to send."""
        content = build_user_content(text, attachments)
        message = Message(type="user", content=content, finalized=True)
        self.messages.append(message)
        self.is_loading = True
        if isinstance(content, str):
            return content
        return [block.to_dict() for block in content]

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    def apply_wire(self, data: dict[str, Any]) -> StreamEvent | None:
        """Parse and apply a wire dict.  Unknown event types are ignored."""
        event = parse_wire_event(data)
        if event is None:
            logger.debug("Ignoring unknown event type: %s", data.get("type"))
            return None
        self.apply(event)
        return event

    def apply(self, event: StreamEvent) -> None:
        if isinstance(event, TextDelta):
            self._on_text(event.text)
        elif isinstance(event, ThinkingStart):
            self._current_assistant().content.append(ThinkingBlock())
        elif isinstance(event, ThinkingDelta):
            self._on_thinking(event.text)
        elif isinstance(event, ToolUse):
            self._on_tool_use(event)
        elif isinstance(event, TokenCountUpdate):
            self.live_token_count = event.count
        elif isinstance(event, Result):
            self._on_result()
        elif isinstance(event, ErrorEvent):
            self._on_error(event)
        elif isinstance(event, RetryAttempt):
            self.notifier.info(
                f"Retrying ({event.attempt}/{event.max_attempts})",
                event.message or f"Attempting to recover from {event.kind}...",
            )
        elif isinstance(event, TimeoutWarning):
            self.notifier.warning(
                "Still thinking...",
                event.message or "The AI is taking longer than usual",
            )
        else:
            logger.debug("Unhandled event: %r", event)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _streaming_assistant(self) -> Message | None:
        """The last message if it is an assistant message still streaming."""
        if self.messages:
            last = self.messages[-1]
            if last.type == "assistant" and not last.finalized and isinstance(last.content, list):
                return last
        return None

    def _current_assistant(self) -> Message:
        message = self._streaming_assistant()
        if message is None:
            # First assistant output of a generation
            self.live_token_count = 0
            message = Message(type="assistant", content=[])
            self.messages.append(message)
        return message

    def _on_text(self, text: str) -> None:
        blocks = self._current_assistant().content
        if blocks and isinstance(blocks[-1], TextBlock):
            blocks[-1].text += text
        else:
            blocks.append(TextBlock(text=text))

    def _on_thinking(self, text: str) -> None:
        message = self._streaming_assistant()
        if message is None or not message.content:
            return
        last = message.content[-1]
        # A delta must directly follow its own thinking_start
        if isinstance(last, ThinkingBlock):
            last.thinking += text

    def _on_tool_use(self, event: ToolUse) -> None:
        block = ToolUseBlock.create(event.tool_id, event.tool_name, event.tool_input)
        blocks = self._current_assistant().content

        if any(isinstance(b, ToolUseBlock) and b.id == block.id for b in blocks):
            logger.debug("Dropping duplicate tool_use %s", block.id)
            return

        active = active_task_indices(blocks)
        if block.is_task or not active:
            blocks.append(block)
            return

        # Round robin over the active Tasks by how many children they hold
        total_nested = sum(len(blocks[i].nested_tools or []) for i in active)
        task = blocks[active[total_nested % len(active)]]
        if any(nested.id == block.id for nested in task.nested_tools):
            logger.debug("Dropping duplicate nested tool_use %s", block.id)
            return
        task.nested_tools.append(block)

    def _on_result(self) -> None:
        self.live_token_count = 0
        self.is_loading = False
        message = self._streaming_assistant()
        if message is not None:
            message.finalized = True

    def _on_error(self, event: ErrorEvent) -> None:
        self.live_token_count = 0
        self.is_loading = False
        streaming = self._streaming_assistant()
        if streaming is not None:
            streaming.finalized = True
        message = event.message or "An error occurred"
        self.notifier.error("Error", message)
        self.messages.append(Message(
            type="assistant",
            content=[TextBlock(text=f"Error: {message}")],
            finalized=True,
        ))


def active_task_indices(blocks: list[ContentBlock]) -> list[int]:
    """Indices of Task blocks not yet followed by a text block, ascending.

    Walks backward from the end; the first text block met closes the scan,
    since every Task before it already has text after it.
    """
    indices: list[int] = []
    for i in range(len(blocks) - 1, -1, -1):
        block = blocks[i]
        if isinstance(block, TextBlock):
            break
        if isinstance(block, ToolUseBlock) and block.is_task:
            indices.append(i)
    indices.reverse()
    return indices
