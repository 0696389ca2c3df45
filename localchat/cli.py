"""Terminal chat client for localchat.

Reads prompts from stdin, streams them to the /chat/stream SSE API and
prints the reply progressively while a MessageAssembler keeps the
conversation tree.  Ctrl-C during a reply stops the generation.

Usage:
    LOCALCHAT_URL=http://localhost:3001 python -m localchat.cli

Environment:
    LOCALCHAT_URL      - localchat base URL (default: http://localhost:3001)
    LOCALCHAT_SESSION  - Session id to resume (default: a new random id)
    LOCALCHAT_MODEL    - Model to request (default: server's choice)

Commands: /new starts a new session, /models lists models, /attach <path>
adds a file (images or text) to the next prompt, /quit exits.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import mimetypes
import os
import signal
import sys
from pathlib import Path
from typing import Any, TextIO
from uuid import uuid4

import httpx

from localchat.api.models import (
    ErrorEvent,
    StreamEvent,
    TextDelta,
    ThinkingStart,
    ToolUse,
    ToolUseBlock,
)
from localchat.assembler import Attachment, MessageAssembler, image_attachment

logger = logging.getLogger(__name__)


def parse_sse_line(line: str) -> dict[str, Any] | None:
    """Decode one ``data: {...}`` line.  Anything else gives None."""
    if not line.startswith("data: "):
        return None
    try:
        data = json.loads(line[6:])
    except json.JSONDecodeError:
        logger.warning("Skipping malformed event line: %.80s", line)
        return None
    return data if isinstance(data, dict) else None


def load_attachment(path: str | Path) -> Attachment:
    """Read a file for the next prompt.  Images go as data URLs, others as text.

    Raises OSError if the file cannot be read.
    """
    path = Path(path)
    media_type = mimetypes.guess_type(path.name)[0] or "text/plain"
    if media_type.startswith("image/"):
        return image_attachment(path.name, media_type, path.read_bytes())
    return Attachment(
        name=path.name,
        media_type=media_type,
        preview=path.read_bytes().decode("utf-8", errors="replace"),
    )


class TerminalNotifier:
    """Notifier that prints notices on their own line."""

    def __init__(self, out: TextIO):
        self._out = out

    def info(self, title: str, description: str = "") -> None:
        self._write("i", title, description)

    def warning(self, title: str, description: str = "") -> None:
        self._write("!", title, description)

    def error(self, title: str, description: str = "") -> None:
        self._write("x", title, description)

    def _write(self, mark: str, title: str, description: str) -> None:
        text = f"{title}: {description}" if description else title
        self._out.write(f"\n[{mark}] {text}\n")
        self._out.flush()


class ChatTerminal:
    """Streams prompts to localchat and renders the assembled reply."""

    def __init__(
        self,
        base_url: str = "http://localhost:3001",
        session_id: str | None = None,
        model: str | None = None,
        out: TextIO | None = None,
        http: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session_id = session_id or str(uuid4())
        self.model = model
        self.out = out or sys.stdout
        self.assembler = MessageAssembler(notifier=TerminalNotifier(self.out))
        self._http = http or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=None, write=10, pool=10)
        )
        self._thinking = False

    async def send(self, text: str, attachments: list[Attachment] | None = None) -> bool:
        """Send one prompt and render the reply.  False if it ended in an error."""
        content = self.assembler.add_user_message(text, attachments)
        payload: dict[str, Any] = {"content": content, "sessionId": self.session_id}
        if self.model:
            payload["model"] = self.model

        ok = True
        try:
            async with self._http.stream(
                "POST", f"{self.base_url}/chat/stream", json=payload
            ) as response:
                if response.status_code != 200:
                    error_body = await response.aread()
                    self.assembler.apply(ErrorEvent(message=error_body.decode(errors="replace")[:200]))
                    return False

                async for line in response.aiter_lines():
                    data = parse_sse_line(line)
                    if data is None:
                        continue
                    event = self.assembler.apply_wire(data)
                    if event is None:
                        continue
                    self._render(event)
                    if isinstance(event, ErrorEvent):
                        ok = False
        except httpx.TimeoutException:
            self.assembler.apply(ErrorEvent(message="Request timed out."))
            ok = False
        except httpx.HTTPError as e:
            self.assembler.apply(ErrorEvent(message=f"Cannot reach localchat: {e}"))
            ok = False
        finally:
            self.assembler.is_loading = False
            self._thinking = False
            self.out.write("\n")
            self.out.flush()
        return ok

    async def stop(self) -> bool:
        """Ask the server to stop this session's generation."""
        try:
            response = await self._http.post(f"{self.base_url}/chat/{self.session_id}/stop")
            return bool(response.json().get("stopped"))
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Stop request failed: %s", e)
            return False

    async def list_models(self) -> list[str]:
        response = await self._http.get(f"{self.base_url}/api/models")
        response.raise_for_status()
        return [m.get("name", "") for m in response.json().get("models", [])]

    def new_session(self) -> None:
        self.session_id = str(uuid4())
        self.assembler = MessageAssembler(notifier=TerminalNotifier(self.out))

    def _render(self, event: StreamEvent) -> None:
        if isinstance(event, ThinkingStart):
            self._thinking = True
            self.out.write("(thinking...) ")
        elif isinstance(event, TextDelta):
            if self._thinking:
                self._thinking = False
                self.out.write("\n")
            self.out.write(event.text)
        elif isinstance(event, ToolUse):
            self.out.write(f"\n{self._tool_label(event)}\n")
        else:
            return
        self.out.flush()

    def _tool_label(self, event: ToolUse) -> str:
        """Top-level tools print as-is, nested ones under their Task."""
        message = self.assembler.messages[-1] if self.assembler.messages else None
        blocks = message.blocks if message else []
        for block in blocks:
            if not isinstance(block, ToolUseBlock):
                continue
            if block.id == event.tool_id:
                return f"[tool] {event.tool_name}"
            if any(nested.id == event.tool_id for nested in block.nested_tools or []):
                return f"  [{block.name} {block.id}] {event.tool_name}"
        return f"[tool] {event.tool_name}"

    async def run(self) -> None:
        """Read-eval-print loop until EOF or /quit."""
        loop = asyncio.get_running_loop()
        attachments: list[Attachment] = []
        self.out.write(f"localchat ({self.base_url}) session {self.session_id}\n")
        while True:
            try:
                text = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            text = text.strip()
            if not text:
                continue
            if text == "/quit":
                break
            if text == "/new":
                self.new_session()
                self.out.write(f"New session {self.session_id}\n")
                continue
            if text == "/models":
                try:
                    for name in await self.list_models():
                        self.out.write(f"  {name}\n")
                except httpx.HTTPError as e:
                    self.out.write(f"Failed to fetch models: {e}\n")
                continue

            if text.startswith("/attach "):
                try:
                    attachments.append(load_attachment(text[len("/attach "):].strip()))
                    self.out.write(f"Attached {attachments[-1].name}\n")
                except OSError as e:
                    self.out.write(f"Cannot attach: {e}\n")
                continue

            reply = asyncio.create_task(self.send(text, attachments))
            attachments = []
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(
                    signal.SIGINT, lambda: asyncio.ensure_future(self.stop())
                )
            try:
                await reply
            finally:
                with contextlib.suppress(NotImplementedError):
                    loop.remove_signal_handler(signal.SIGINT)

    async def close(self) -> None:
        """Cleanup."""
        await self._http.aclose()


async def main() -> None:
    """Entry point."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    terminal = ChatTerminal(
        base_url=os.environ.get("LOCALCHAT_URL", "http://localhost:3001"),
        session_id=os.environ.get("LOCALCHAT_SESSION") or None,
        model=os.environ.get("LOCALCHAT_MODEL") or None,
    )
    try:
        await terminal.run()
    finally:
        await terminal.close()


if __name__ == "__main__":
    asyncio.run(main())
