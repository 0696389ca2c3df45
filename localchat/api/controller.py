"""Generation session controller.

Maps session ids to conversation history and to at most one live
generation, turns user turns into backend calls and relays backend
records as typed StreamEvents.

Per session: Idle -> Generating -> Idle.  open() performs the Idle ->
Generating transition synchronously (validation, history, cancellation
token), so a stop request received right after a chat message always
finds the token.  events() drives the backend stream and always returns
the session to Idle, whether the generation completes, fails or is
cancelled.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import OrderedDict
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any
from uuid import uuid4

from localchat.api.errors import (
    ChatError,
    EmptyMessage,
    GenerationInProgress,
    UnknownGenerationError,
)
from localchat.api.models import (
    ChatChunk,
    ChatRequest,
    ConversationTurn,
    ErrorEvent,
    Result,
    Session,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ThinkingStart,
    TimeoutWarning,
    TokenCountUpdate,
    ToolUse,
)
from localchat.api.ollama import OllamaClient
from localchat.config import ChatConfig, Settings
from localchat.events import (
    GENERATION_CANCELLED,
    GENERATION_COMPLETED,
    GENERATION_FAILED,
    GENERATION_STARTED,
    EventBus,
    GenerationEvent,
)

logger = logging.getLogger(__name__)

# Sends one wire dict to the client subscribed to a session
Send = Callable[[dict[str, Any]], Awaitable[None]]

_STREAM_END = object()


async def _next_record(stream: AsyncGenerator[dict[str, Any], None]) -> Any:
    return await anext(stream, _STREAM_END)


class GenerationOutcome(StrEnum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class GenerationCancelled(Exception):
    """Raised inside the consumption loop once its token is cancelled."""


class CancellationToken:
    """Cooperative cancellation for one generation."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled()


class SessionRegistry:
    """Session histories and live cancellation tokens.

    Owned by a single controller and only touched from its event loop.
    Least recently used sessions are evicted past max_sessions, except
    sessions that are generating.
    """

    def __init__(self, max_sessions: int = 100) -> None:
        self._max_sessions = max_sessions
        self._sessions: OrderedDict[str, Session] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def ids(self) -> list[str]:
        return list(self._sessions)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> Session:
        if session_id in self._sessions:
            self._sessions.move_to_end(session_id)
            return self._sessions[session_id]

        self._evict()
        session = Session(id=session_id)
        self._sessions[session_id] = session
        return session

    def active(self, session_id: str) -> CancellationToken | None:
        session = self._sessions.get(session_id)
        return session.active if session else None

    def activate(self, session: Session) -> CancellationToken:
        token = CancellationToken()
        session.active = token
        return token

    def release(self, session: Session, token: CancellationToken) -> None:
        """Clear the live token, unless a newer generation already owns it."""
        if session.active is token:
            session.active = None

    def remove(self, session_id: str) -> Session | None:
        return self._sessions.pop(session_id, None)

    def _evict(self) -> None:
        while len(self._sessions) >= self._max_sessions:
            idle = next((sid for sid, s in self._sessions.items() if s.active is None), None)
            if idle is None:
                return
            del self._sessions[idle]
            logger.debug("Evicted idle session %s", idle)


@dataclass
class Generation:
    """State of one in-flight generation."""

    session: Session
    token: CancellationToken
    requested_model: str | None = None
    model: str = ""
    text_parts: list[str] = field(default_factory=list)
    token_count: int = 0
    eval_count: int | None = None  # backend's own token count, from the done record
    thinking: bool = False
    outcome: GenerationOutcome | None = None

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def text(self) -> str:
        return "".join(self.text_parts)


class GenerationController:
    """Runs generations for many sessions, one at a time per session."""

    def __init__(
        self,
        backend: OllamaClient,
        settings: Settings,
        config: ChatConfig | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._backend = backend
        self._settings = settings
        self.config = config or ChatConfig()
        self._bus = bus
        self.sessions = SessionRegistry(settings.max_sessions)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def open(self, request: ChatRequest) -> Generation:
        """Idle -> Generating.  No await: validation and bookkeeping only.

        Raises EmptyMessage or GenerationInProgress without touching state.
        """
        user_message = request.text
        if not user_message.strip():
            raise EmptyMessage()
        if self.sessions.active(request.session_id) is not None:
            raise GenerationInProgress()

        session = self.sessions.get_or_create(request.session_id)
        if not session.history and self.config.system_context:
            session.history.append(
                ConversationTurn(role="system", content=self.config.system_context)
            )
        session.history.append(ConversationTurn(role="user", content=user_message))

        token = self.sessions.activate(session)
        return Generation(session=session, token=token, requested_model=request.model)

    async def events(self, generation: Generation) -> AsyncGenerator[StreamEvent, None]:
        """Consume the backend stream for an opened generation.

        Yields nothing further once the generation is cancelled.  Failures
        end in exactly one ErrorEvent.  The live token is released in
        every case.
        """
        session = generation.session
        token = generation.token
        try:
            generation.model = await self.resolve_model(generation.requested_model)
            token.raise_if_cancelled()
            self._publish(GENERATION_STARTED, generation)

            stream = self._backend.stream_chat(
                generation.model,
                [turn.to_backend() for turn in session.history],
                options=self.config.model.options(),
            )
            async with contextlib.aclosing(self._watch(stream, token)) as records:
                async for item in records:
                    if isinstance(item, TimeoutWarning):
                        yield item
                        continue

                    chunk = ChatChunk.from_record(item)
                    for event in self._translate(generation, chunk):
                        token.raise_if_cancelled()
                        yield event

                    if chunk.done:
                        break
                else:
                    logger.warning(
                        "Backend stream ended without done for session %s", generation.session_id
                    )

            # Last point a stop can land; past it stop() finds no live token
            token.raise_if_cancelled()
            self.sessions.release(session, token)
            session.history.append(ConversationTurn(role="assistant", content=generation.text))
            generation.outcome = GenerationOutcome.COMPLETED
            self._publish(
                GENERATION_COMPLETED, generation, text=generation.text, eval_count=generation.eval_count
            )
            yield TokenCountUpdate(count=generation.token_count)
            yield Result()

        except GenerationCancelled:
            generation.outcome = GenerationOutcome.CANCELLED
            logger.info("Generation stopped for session: %s", generation.session_id)
            self._publish(GENERATION_CANCELLED, generation, partial_text=generation.text)

        except ChatError as e:
            generation.outcome = GenerationOutcome.FAILED
            logger.error("Generation failed for session %s: %s", generation.session_id, e)
            self._publish(GENERATION_FAILED, generation, kind=e.kind, message=e.message)
            if not token.cancelled:
                yield ErrorEvent(message=e.message, kind=e.kind)

        except Exception as e:
            error = UnknownGenerationError(str(e) or None)
            generation.outcome = GenerationOutcome.FAILED
            logger.exception("Error streaming from Ollama for session %s", generation.session_id)
            self._publish(GENERATION_FAILED, generation, kind=error.kind, message=error.message)
            if not token.cancelled:
                yield ErrorEvent(message=error.message, kind=error.kind)

        finally:
            self.sessions.release(session, token)

    async def relay(self, generation: Generation, send: Send) -> GenerationOutcome | None:
        """Drive events() and send each one over the wire channel."""
        async with contextlib.aclosing(self.events(generation)) as events:
            async for event in events:
                await send(event.to_wire(generation.session_id))
        return generation.outcome

    async def stream_chat(
        self,
        session_id: str,
        content: str | list[dict[str, Any]],
        model: str | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """open() + events(); a rejected open() becomes one ErrorEvent."""
        try:
            generation = self.open(ChatRequest(content=content, session_id=session_id, model=model))
        except ChatError as e:
            logger.info("Rejected chat for session %s: %s", session_id, e.kind)
            yield ErrorEvent(message=e.message, kind=e.kind)
            return

        async with contextlib.aclosing(self.events(generation)) as events:
            async for event in events:
                yield event

    def stop(self, session_id: str) -> bool:
        """Cancel the live generation for a session.  No-op without one."""
        session = self.sessions.get(session_id)
        if session is None or session.active is None:
            return False
        token = session.active
        token.cancel()
        self.sessions.release(session, token)
        logger.info("Stopped generation for session: %s", session_id)
        return True

    def stop_all(self) -> int:
        """Cancel every live generation.  Returns how many were stopped."""
        return sum(self.stop(session_id) for session_id in self.sessions.ids())

    def history(self, session_id: str) -> list[ConversationTurn]:
        session = self.sessions.get(session_id)
        return list(session.history) if session else []

    def end_session(self, session_id: str) -> bool:
        """Stop any live generation and forget the session."""
        self.stop(session_id)
        return self.sessions.remove(session_id) is not None

    def is_generating(self, session_id: str) -> bool:
        return self.sessions.active(session_id) is not None

    async def resolve_model(self, requested: str | None = None) -> str:
        """Explicit request > configured model > backend default."""
        return requested or self.config.model.name or await self._backend.get_default_model()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _watch(
        self,
        stream: AsyncGenerator[dict[str, Any], None],
        token: CancellationToken,
    ) -> AsyncGenerator[dict[str, Any] | TimeoutWarning, None]:
        """Iterate the backend stream, racing each wait against the token.

        Emits an advisory TimeoutWarning whenever no record arrives for
        timeout_warning_seconds.  Raises GenerationCancelled as soon as the
        token is cancelled, without waiting for the next record.
        """
        interval = self._settings.timeout_warning_seconds or None
        started = time.monotonic()
        cancelled = asyncio.create_task(token.wait())
        pending: asyncio.Task | None = None
        try:
            while True:
                pending = asyncio.create_task(_next_record(stream))
                while True:
                    done, _ = await asyncio.wait(
                        {pending, cancelled},
                        timeout=interval,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    if pending in done:
                        break
                    if cancelled in done:
                        raise GenerationCancelled()
                    elapsed = int(time.monotonic() - started)
                    yield TimeoutWarning(
                        elapsed_seconds=elapsed,
                        message=f"The model is taking longer than usual ({elapsed}s)",
                    )
                finished, pending = pending, None
                record = finished.result()
                if record is _STREAM_END:
                    return
                token.raise_if_cancelled()
                yield record
        finally:
            cancelled.cancel()
            if pending is not None:
                pending.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await pending
            await stream.aclose()

    def _translate(self, generation: Generation, chunk: ChatChunk) -> list[StreamEvent]:
        """Turn one backend chunk into wire events, updating generation state."""
        events: list[StreamEvent] = []

        if chunk.thinking:
            if not generation.thinking:
                generation.thinking = True
                events.append(ThinkingStart())
            events.append(ThinkingDelta(text=chunk.thinking))

        if chunk.content:
            generation.thinking = False
            generation.text_parts.append(chunk.content)
            events.append(TextDelta(text=chunk.content))

        for call in chunk.tool_calls:
            generation.thinking = False
            function = call.get("function") or {}
            arguments = function.get("arguments")
            events.append(ToolUse(
                tool_id=call.get("id") or f"call_{uuid4().hex[:12]}",
                tool_name=function.get("name") or call.get("name") or "unknown",
                tool_input=arguments if isinstance(arguments, dict) else {},
            ))

        if chunk.eval_count is not None:
            generation.eval_count = chunk.eval_count

        if chunk.thinking or chunk.content:
            generation.token_count += 1
            if generation.token_count % self._settings.token_update_interval == 0:
                events.append(TokenCountUpdate(count=generation.token_count))

        return events

    def _publish(self, event_type: str, generation: Generation, **data: Any) -> None:
        if self._bus is None:
            return
        self._bus.emit(GenerationEvent(
            type=event_type,
            session_id=generation.session_id,
            data={"model": generation.model, "token_count": generation.token_count, **data},
        ))
