"""HTTP and WebSocket API for localchat.

Endpoints:
  WS   /ws                       - Wire channel: chat / stop_generation in, stream events out
  POST /chat/stream              - Same stream events as SSE
  POST /chat/{session_id}/stop   - Stop the live generation of a session
  GET  /chat/{session_id}/history - Committed conversation turns
  DELETE /chat/{session_id}      - End a conversation
  GET  /api/models               - Installed models
  POST /api/models/pull          - Download a model (SSE progress)
  GET  /api/health               - Backend health
  GET  /api/settings             - Active model configuration
  POST /api/reload-config        - Re-read the config directory
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from localchat.api.controller import GenerationController
from localchat.api.errors import BackendUnavailable, ChatError
from localchat.api.models import ChatRequest, ErrorEvent
from localchat.api.ollama import OllamaClient
from localchat.config import ChatConfig, Settings

logger = logging.getLogger(__name__)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def _sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


def create_app(
    controller: GenerationController,
    backend: OllamaClient,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat_socket(websocket: WebSocket) -> None:
        """WS /ws - bidirectional wire channel.

        Each chat message runs as its own task so stop_generation messages
        are read while a generation streams.
        """
        await websocket.accept()
        logger.info("WebSocket client connected")
        tasks: set[asyncio.Task] = set()

        async def send(data: dict[str, Any]) -> None:
            await websocket.send_json(data)

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    data = json.loads(raw)
                    if not isinstance(data, dict):
                        raise ValueError("message must be a JSON object")
                except ValueError as e:
                    await send({"type": "error", "message": f"Invalid message: {e}", "errorType": "invalid_message"})
                    continue

                message_type = data.get("type")
                if message_type == "chat":
                    request = ChatRequest.from_wire(data)
                    try:
                        generation = controller.open(request)
                    except ChatError as e:
                        await send(ErrorEvent(message=e.message, kind=e.kind).to_wire(request.session_id))
                        continue
                    task = asyncio.create_task(
                        controller.relay(generation, send),
                        name=f"generation-{request.session_id}",
                    )
                    tasks.add(task)
                    task.add_done_callback(tasks.discard)
                elif message_type == "stop_generation":
                    session_id = data.get("sessionId")
                    if session_id:
                        controller.stop(session_id)
                else:
                    await send({
                        "type": "error",
                        "message": f"Unknown message type: {message_type}",
                        "errorType": "invalid_message",
                    })
        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected")
        finally:
            for task in tasks:
                task.cancel()

    async def chat_stream(request: Request) -> StreamingResponse:
        """POST /chat/stream - SSE streaming chat."""
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        chat_request = ChatRequest.from_wire(body)

        async def event_generator() -> AsyncIterator[str]:
            try:
                async for event in controller.stream_chat(
                    chat_request.session_id, chat_request.content, model=chat_request.model,
                ):
                    yield _sse(event.to_wire(chat_request.session_id))
            except Exception as e:
                logger.error("Stream error: %s", e)
                yield _sse(ErrorEvent(message=str(e)).to_wire(chat_request.session_id))

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers=_SSE_HEADERS,
        )

    async def stop_chat(request: Request) -> JSONResponse:
        """POST /chat/{session_id}/stop - Stop the live generation."""
        session_id = request.path_params["session_id"]
        stopped = controller.stop(session_id)
        return JSONResponse({"stopped": stopped, "session_id": session_id})

    async def chat_history(request: Request) -> JSONResponse:
        """GET /chat/{session_id}/history - Committed turns."""
        session_id = request.path_params["session_id"]
        if session_id not in controller.sessions:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse({
            "session_id": session_id,
            "generating": controller.is_generating(session_id),
            "history": [turn.to_backend() for turn in controller.history(session_id)],
        })

    async def end_chat(request: Request) -> JSONResponse:
        """DELETE /chat/{session_id} - End a conversation."""
        session_id = request.path_params["session_id"]
        existed = controller.end_session(session_id)
        return JSONResponse({"status": "ended" if existed else "not_found", "session_id": session_id})

    async def list_models(request: Request) -> JSONResponse:
        """GET /api/models - Installed models."""
        try:
            models = await backend.list_models()
            return JSONResponse({"models": [m.to_dict() for m in models]})
        except BackendUnavailable as e:
            logger.error("List models error: %s", e)
            return JSONResponse({"error": "Failed to fetch models", "detail": e.message}, status_code=503)

    async def pull_model(request: Request) -> StreamingResponse:
        """POST /api/models/pull - SSE download progress."""
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        name = body.get("name") if isinstance(body, dict) else None
        if not name:
            return JSONResponse({"error": "Missing required field: name"}, status_code=400)

        async def progress_generator() -> AsyncIterator[str]:
            try:
                async for update in backend.pull_model(name):
                    yield _sse(update)
            except ChatError as e:
                logger.error("Pull %s failed: %s", name, e)
                yield _sse({"status": "error", "error": e.message, "errorType": e.kind})

        return StreamingResponse(
            progress_generator(),
            media_type="text/event-stream",
            headers=_SSE_HEADERS,
        )

    async def health(request: Request) -> JSONResponse:
        """GET /api/health - Backend health."""
        healthy = await backend.health()
        return JSONResponse({
            "status": "ok" if healthy else "ollama_unavailable",
            "ollama": healthy,
            "active_sessions": len(controller.sessions),
        })

    async def get_settings(request: Request) -> JSONResponse:
        """GET /api/settings - Active model configuration."""
        config = controller.config
        return JSONResponse({
            "model": config.model.model_dump(),
            "system_prompt_enabled": bool(config.system_context),
        })

    async def reload_config(request: Request) -> JSONResponse:
        """POST /api/reload-config - Re-read system prompt, knowledge and model config."""
        try:
            controller.config = ChatConfig.load(settings)
        except Exception as e:
            logger.error("Reload config error: %s", e)
            return JSONResponse({"error": "Failed to reload configuration"}, status_code=500)
        logger.info("Configuration reloaded (model: %s)", controller.config.model.name or "backend default")
        return JSONResponse({"success": True, "message": "Configuration reloaded successfully"})

    routes = [
        WebSocketRoute("/ws", chat_socket),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/{session_id}/stop", stop_chat, methods=["POST"]),
        Route("/chat/{session_id}/history", chat_history),
        Route("/chat/{session_id}", end_chat, methods=["DELETE"]),
        Route("/api/models", list_models),
        Route("/api/models/pull", pull_model, methods=["POST"]),
        Route("/api/health", health),
        Route("/api/settings", get_settings),
        Route("/api/reload-config", reload_config, methods=["POST"]),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
