"""Error taxonomy for the generation pipeline.

Every ChatError carries the ``kind`` sent as ``errorType`` on the wire and a
user-facing message.  MalformedStreamLine never leaves the decoder.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base class for errors surfaced to the chat client."""

    kind = "unknown_error"
    default_message = "An error occurred while generating response"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class EmptyMessage(ChatError):
    kind = "empty_message"
    default_message = "Empty message"


class GenerationInProgress(ChatError):
    kind = "generation_in_progress"
    default_message = "A response is already being generated for this session"


class BackendUnavailable(ChatError):
    kind = "ollama_unavailable"
    default_message = "Ollama is not running. Please start Ollama first."


class NoModelsFound(ChatError):
    kind = "no_models_found"
    default_message = "No models installed. Install one with: ollama pull llama3.2"


class UnknownGenerationError(ChatError):
    kind = "unknown_error"


class MalformedStreamLine(ValueError):
    """A stream line that is not a JSON object."""

    def __init__(self, line: str, reason: str) -> None:
        self.line = line
        super().__init__(f"{reason}: {line[:200]!r}")
