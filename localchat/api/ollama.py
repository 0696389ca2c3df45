"""Ollama backend client.

Thin httpx wrapper over the model-serving process: health, model listing,
default model selection, model pulls and the streaming chat call.  Stream
bodies go through decode_stream so chunk boundaries never matter here.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Any

import httpx

from localchat.api.decoder import decode_stream
from localchat.api.errors import BackendUnavailable, NoModelsFound, UnknownGenerationError
from localchat.api.models import ModelInfo
from localchat.config import Settings

logger = logging.getLogger(__name__)

RECOMMENDED_MODEL = "llama3.2:3b"

# Best for tool calling on modest hardware first, then larger fallbacks
PREFERRED_MODELS = (
    "llama3.2:3b-instruct-q4_K_M",
    "llama3.2:3b",
    "qwen2.5:7b-instruct-q4_K_M",
    "mistral:7b-instruct-q4_K_M",
    "llama3.1:8b",
    "llama3.2",
)


def pick_default_model(models: list[ModelInfo]) -> str:
    """Apply PREFERRED_MODELS to the installed models.

    A model matches when its name equals or contains the preferred name.
    Falls back to the first installed model.
    """
    if not models:
        raise NoModelsFound()
    for preferred in PREFERRED_MODELS:
        for model in models:
            if model.name == preferred or preferred in model.name:
                return model.name
    return models[0].name


class OllamaClient:
    """Async client for the Ollama HTTP API."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None

    async def start(self) -> None:
        """Initialize the httpx client with timeout settings."""
        if self._http is not None:
            return
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.ollama_base_url.rstrip("/"),
            timeout=timeout,
            limits=limits,
        )
        logger.info("Ollama client initialized (%s)", settings.ollama_base_url)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    # ------------------------------------------------------------------
    # Auxiliary calls
    # ------------------------------------------------------------------

    async def health(self) -> bool:
        """True if Ollama answers.  Never raises."""
        try:
            response = await self._client().get("/api/tags")
            return response.is_success
        except (httpx.HTTPError, RuntimeError) as e:
            logger.warning("Ollama health check failed: %s", e)
            return False

    async def list_models(self) -> list[ModelInfo]:
        """Installed models.  Raises BackendUnavailable if the call fails."""
        try:
            response = await self._client().get("/api/tags")
        except httpx.HTTPError as e:
            raise BackendUnavailable(f"Failed to list models: {e}") from e
        if not response.is_success:
            raise BackendUnavailable(
                f"Failed to list models: HTTP {response.status_code} {response.reason_phrase}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise BackendUnavailable(f"Failed to list models: invalid response ({e})") from e
        return [ModelInfo.from_record(m) for m in data.get("models", []) if isinstance(m, dict)]

    async def get_default_model(self) -> str:
        """Preferred installed model.  Raises NoModelsFound if none installed."""
        model = pick_default_model(await self.list_models())
        logger.info("Using default model: %s", model)
        return model

    # ------------------------------------------------------------------
    # Streaming calls
    # ------------------------------------------------------------------

    async def stream_chat(
        self,
        model: str,
        messages: list[dict[str, Any]],
        options: dict[str, Any] | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Stream chat completion records from /api/chat.

        Raises BackendUnavailable when Ollama refuses the connection and
        UnknownGenerationError on a non-2xx response.
        """
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
        }
        if options:
            payload["options"] = options

        async for record in self._stream_records("/api/chat", payload):
            yield record

    async def pull_model(self, name: str) -> AsyncGenerator[dict[str, Any], None]:
        """Download a model, yielding progress updates.

        Each update is {status, digest, total, completed, progress} where
        progress is a percentage once both sizes are known.
        """
        async for record in self._stream_records("/api/pull", {"name": name, "stream": True}):
            total = record.get("total")
            completed = record.get("completed")
            yield {
                "status": record.get("status", ""),
                "digest": record.get("digest"),
                "total": total,
                "completed": completed,
                "progress": (completed / total) * 100 if total and completed else None,
            }

    async def _stream_records(
        self, path: str, payload: dict[str, Any]
    ) -> AsyncGenerator[dict[str, Any], None]:
        try:
            async with self._client().stream("POST", path, json=payload) as response:
                if not response.is_success:
                    error_body = (await response.aread()).decode(errors="replace")[:500]
                    raise UnknownGenerationError(
                        f"Ollama API error ({response.status_code}): {error_body}"
                    )
                async for record in decode_stream(response.aiter_bytes()):
                    yield record
        except httpx.ConnectError as e:
            raise BackendUnavailable() from e
