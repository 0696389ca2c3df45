"""Shared fixtures: settings pointed at a temp config dir and a scripted backend."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from localchat.api.models import ModelInfo
from localchat.config import Settings

# ---------------------------------------------------------------------------
# Record helpers
# ---------------------------------------------------------------------------


def chunk(content: str = "", thinking: str = "", tool_calls: list | None = None, done: bool = False) -> dict:
    """One backend chat record."""
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if thinking:
        message["thinking"] = thinking
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {"model": "llama3.2:3b", "message": message, "done": done}


def done() -> dict:
    return {"model": "llama3.2:3b", "message": {"role": "assistant", "content": ""}, "done": True, "eval_count": 2}


# ---------------------------------------------------------------------------
# Scripted backend
# ---------------------------------------------------------------------------


class FakeBackend:
    """Stands in for OllamaClient; replays a fixed list of records.

    hang=True blocks forever after the last record (until cancelled).
    delay sleeps before the first record.  error is raised on the first
    read.  default_model may be an exception to raise instead.
    """

    def __init__(
        self,
        records: list[dict] | None = None,
        default_model: str | Exception = "llama3.2:3b",
        error: Exception | None = None,
        hang: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.records = records or []
        self.default_model = default_model
        self.error = error
        self.hang = hang
        self.delay = delay
        self.calls: list[tuple[str, list[dict], dict | None]] = []
        self.closed = False
        self.healthy = True
        self.models = [ModelInfo(id="llama3.2:3b", name="llama3.2:3b", size=2019393189)]
        self.pulls: list[str] = []

    async def get_default_model(self) -> str:
        if isinstance(self.default_model, Exception):
            raise self.default_model
        return self.default_model

    async def stream_chat(self, model: str, messages: list[dict], options: dict | None = None):
        self.calls.append((model, messages, options))
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            for record in self.records:
                yield record
            if self.hang:
                await asyncio.Event().wait()
        finally:
            self.closed = True

    async def health(self) -> bool:
        return self.healthy

    async def list_models(self) -> list[ModelInfo]:
        if isinstance(self.error, Exception):
            raise self.error
        return self.models

    async def pull_model(self, name: str):
        self.pulls.append(name)
        yield {"status": "pulling manifest", "digest": None, "total": None, "completed": None, "progress": None}
        yield {"status": "downloading", "digest": "sha256:abc", "total": 200, "completed": 100, "progress": 50.0}
        yield {"status": "success", "digest": None, "total": None, "completed": None, "progress": None}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with an empty config dir and no timeout warnings."""
    return Settings(
        config_dir=str(tmp_path),
        enable_system_prompt=False,
        enable_knowledge_base=False,
        timeout_warning_seconds=0,
        event_bus_enabled=False,
    )


@pytest.fixture
def hi_backend() -> FakeBackend:
    """Backend that answers "Hello" in two chunks."""
    return FakeBackend([chunk("Hel"), chunk("lo"), done()])
