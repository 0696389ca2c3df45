"""localchat entry point.

Initializes all components and starts the server:
  Settings -> ChatConfig -> EventBus -> OllamaClient -> GenerationController -> App -> Uvicorn

Components are constructed up front so routes can hold real references;
anything that needs the running event loop (httpx client, bus task) is
started in the Starlette lifespan, on the same loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from localchat.api.controller import GenerationController
from localchat.api.ollama import RECOMMENDED_MODEL, OllamaClient
from localchat.api.rest import create_app
from localchat.config import ChatConfig, Settings
from localchat.events import EventBus, log_generation_event

logger = logging.getLogger(__name__)


def create_components(settings: Settings) -> dict:
    """Build all components in dependency order.

    1. ChatConfig - system prompt, knowledge base, model parameters
    2. EventBus - optional lifecycle events (None if disabled)
    3. OllamaClient - backend HTTP client
    4. GenerationController - sessions and generations
    """
    config = ChatConfig.load(settings)

    bus = None
    if settings.event_bus_enabled:
        bus = EventBus()
        bus.on_all(log_generation_event)

    backend = OllamaClient(settings)
    controller = GenerationController(backend, settings, config=config, bus=bus)

    return {
        "config": config,
        "bus": bus,
        "backend": backend,
        "controller": controller,
    }


async def start_components(components: dict) -> None:
    """Start loop-bound resources and report backend status."""
    bus = components.get("bus")
    if bus:
        await bus.start()

    backend: OllamaClient = components["backend"]
    await backend.start()

    if await backend.health():
        logger.info("Ollama is running")
        try:
            models = await backend.list_models()
            logger.info("Available models: %s", ", ".join(m.name for m in models) or "none")
            if not models:
                logger.warning("No models installed. Run: ollama pull %s", RECOMMENDED_MODEL)
        except Exception as e:
            logger.warning("Could not list models: %s", e)
    else:
        logger.warning("Ollama is not running. Start it with: ollama serve")


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down localchat...")

    controller = components.get("controller")
    if controller:
        stopped = controller.stop_all()
        if stopped:
            logger.info("Stopped %d live generation(s)", stopped)

    bus = components.get("bus")
    if bus:
        await bus.stop()

    backend = components.get("backend")
    if backend:
        await backend.close()

    logger.info("localchat shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app with the component lifecycle in its lifespan."""
    components = create_components(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await start_components(components)

        # Store on app.state for access in tests
        app.state.components = components

        logger.info("localchat listening on http://%s:%s", settings.host, settings.port)
        yield

        await shutdown_components(components)

    return create_app(
        controller=components["controller"],
        backend=components["backend"],
        settings=settings,
        lifespan=lifespan,
    )


def main() -> None:
    """Entry point - parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting localchat")
    logger.info("Ollama: %s", settings.ollama_base_url)
    logger.info("Model: %s", settings.model_name or "auto-detect")
    logger.info("Config directory: %s", settings.config_dir)

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
