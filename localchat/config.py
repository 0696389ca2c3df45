"""Settings via pydantic-settings with LOCALCHAT_ env prefix.

The backend URL also reads the unprefixed OLLAMA_BASE_URL that the Ollama
tooling itself uses, so one .env file drives both.

ChatConfig is the static configuration provider: system prompt, knowledge
base and model sampling parameters, read from files in ``config_dir``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LOCALCHAT_", env_file=".env", extra="ignore", protected_namespaces=()
    )

    # Server
    host: str = "127.0.0.1"
    port: int = 3001
    log_level: str = "info"

    # Model backend
    ollama_base_url: str = Field("http://localhost:11434", validation_alias="OLLAMA_BASE_URL")
    api_timeout_connect: float = 10.0  # seconds
    api_timeout_read: float | None = None  # generations may idle for minutes on CPU

    # Model defaults (config_dir/settings.json overrides these)
    model_name: str = ""  # empty = ask the backend for its default
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40

    # Static config files
    config_dir: str = "config"
    enable_system_prompt: bool = True
    enable_knowledge_base: bool = True

    # Generation
    token_update_interval: int = 10  # emit token_update every N chunks
    timeout_warning_seconds: float = 30.0  # 0 disables "still thinking" warnings
    max_sessions: int = 100

    # Lifecycle events
    event_bus_enabled: bool = True

    @model_validator(mode="after")
    def _validate_generation(self) -> "Settings":
        if self.token_update_interval < 1:
            raise ValueError("token_update_interval must be >= 1")
        if self.timeout_warning_seconds < 0:
            raise ValueError("timeout_warning_seconds must be >= 0 (0 disables)")
        if self.max_sessions < 1:
            raise ValueError("max_sessions must be >= 1")
        return self


class ModelConfig(BaseModel):
    """Model selection and sampling parameters sent with every chat call."""

    name: str = ""
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    top_p: float = Field(0.9, gt=0.0, le=1.0)
    top_k: int = Field(40, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelConfig:
        return cls(
            name=settings.model_name,
            temperature=settings.temperature,
            top_p=settings.top_p,
            top_k=settings.top_k,
        )

    def options(self) -> dict[str, Any]:
        return {"temperature": self.temperature, "top_p": self.top_p, "top_k": self.top_k}


class ChatConfig(BaseModel):
    """Loaded static configuration: model parameters plus system context."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    system_context: str = ""

    @classmethod
    def load(cls, settings: Settings) -> ChatConfig:
        """Read config_dir.  Missing or broken files fall back to defaults.

        Files:
          settings.json     - {"model": {...}, "system": {...}} overrides
          system-prompt.txt - system prompt
          knowledge.md      - knowledge base appended to the system prompt
        """
        config_dir = Path(settings.config_dir)
        overrides = _read_json(config_dir / "settings.json")

        model = ModelConfig.from_settings(settings)
        model_overrides = overrides.get("model")
        if isinstance(model_overrides, dict):
            try:
                model = ModelConfig.model_validate({**model.model_dump(), **model_overrides})
            except ValidationError as e:
                logger.warning("Ignoring invalid model section in settings.json: %s", e)

        system = overrides.get("system") if isinstance(overrides.get("system"), dict) else {}
        enable_prompt = system.get("enableSystemPrompt", settings.enable_system_prompt)
        enable_knowledge = system.get("enableKnowledgeBase", settings.enable_knowledge_base)

        parts: list[str] = []
        if enable_prompt:
            prompt = _read_text(config_dir / "system-prompt.txt")
            if prompt is None:
                logger.warning("Could not load system-prompt.txt, using default")
                prompt = DEFAULT_SYSTEM_PROMPT
            if prompt:
                parts.append(prompt)
        if enable_knowledge:
            knowledge = _read_text(config_dir / "knowledge.md")
            if knowledge and knowledge.strip():
                parts.append("\n\n---\n\n# Knowledge Base\n\n" + knowledge)

        return cls(model=model, system_context="\n".join(parts).strip())


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return None


def _read_json(path: Path) -> dict[str, Any]:
    text = _read_text(path)
    if text is None:
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("Could not parse %s, using defaults: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}
