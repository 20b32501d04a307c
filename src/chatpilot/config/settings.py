"""
config/settings.py — ChatPilot Runtime Settings

Two sources, one validated object:
  - config/config.yaml   structure and tunables (assistant, agent, telegram, logging)
  - environment / .env   credentials (OPENAI_API_KEY, TELEGRAM_BOT_TOKEN, ...)

Value errors (a zero idle timeout, an unknown log level) fail at parse time
as pydantic ValidationErrors. Problems that depend on which interface is
being started are collected by validate_all() into a single ConfigError.

A missing OPENAI_API_KEY is reported by validate_all() so the operator sees
it at startup, but it is AgentSession.initialize() that enforces it, per
session, with ConfigurationError.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigError(Exception):
    """Startup configuration is unusable; the message lists every problem."""


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
INTERFACES = ("telegram", "cli")

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "CHATPILOT_CONFIG"


# ─────────────────────────────────────────────────────────────────────────────
# Sections
# ─────────────────────────────────────────────────────────────────────────────

class AssistantConfig(BaseModel):
    name: str = "ChatPilot Assistant"
    model: str = "gpt-4o"
    # None → brain.assistant.DEFAULT_INSTRUCTIONS
    instructions: Optional[str] = None
    code_interpreter: bool = True

    @field_validator("model")
    @classmethod
    def _strip_model(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("assistant.model must not be empty")
        return v


class AgentConfig(BaseModel):
    idle_timeout_seconds: float = 8 * 60 * 60
    reaper_interval_seconds: float = 5.0
    # partial message edit every N streamed text chunks
    stream_update_every: int = 15

    @field_validator("idle_timeout_seconds", "reaper_interval_seconds")
    @classmethod
    def _positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0 seconds")
        return v

    @field_validator("stream_update_every")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class TelegramConfig(BaseModel):
    authorized_user_ids: list[int] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 50
    backup_count: int = 5
    console_output: bool = True
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"logging.level '{v}' is not one of {list(LOG_LEVELS)}")
        return level


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    Precedence, highest first: environment, .env, config.yaml, defaults.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openai_base_url: Optional[str] = Field(default=None, alias="OPENAI_BASE_URL")
    telegram_bot_token: Optional[str] = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    telegram_user_id: Optional[int] = Field(default=None, alias="TELEGRAM_USER_ID")

    assistant: AssistantConfig = Field(default_factory=AssistantConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("telegram_user_id", mode="before")
    @classmethod
    def _blank_user_id(cls, v: Any) -> Any:
        # .env templates ship `TELEGRAM_USER_ID=`
        return None if v in ("", "null") else v

    @property
    def log_level(self) -> str:
        return self.logging.level

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def authorized_telegram_ids(self) -> list[int]:
        """config.yaml whitelist plus TELEGRAM_USER_ID, without duplicates."""
        ids = list(self.telegram.authorized_user_ids)
        if self.telegram_user_id is not None and self.telegram_user_id not in ids:
            ids.append(self.telegram_user_id)
        return ids

    def validate_all(self, interface: str = "telegram") -> None:
        """Check everything the chosen interface needs. Raises ConfigError."""
        problems: list[str] = []

        if interface not in INTERFACES:
            problems.append(f"Unknown interface '{interface}'. Supported: {list(INTERFACES)}")

        if not self.openai_api_key:
            problems.append(
                "OPENAI_API_KEY is not set. Every agent session needs it to "
                "provision its assistant; add it to your .env file."
            )

        if interface == "telegram" and not self.telegram_bot_token:
            problems.append("The telegram interface requires TELEGRAM_BOT_TOKEN in your .env file.")

        if self.agent.reaper_interval_seconds > self.agent.idle_timeout_seconds:
            problems.append(
                "agent.reaper_interval_seconds is larger than agent.idle_timeout_seconds; "
                "idle sessions would outlive their timeout by a full sweep."
            )

        if problems:
            listing = "\n".join(f"  {n}. {p}" for n, p in enumerate(problems, start=1))
            raise ConfigError(
                f"\n\nChatPilot cannot start: {len(problems)} configuration "
                f"problem(s) found:\n\n{listing}\n\n"
                f"Edit config/config.yaml or .env and try again.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loading
# ─────────────────────────────────────────────────────────────────────────────

_SECTIONS = frozenset({"assistant", "agent", "telegram", "logging"})

_current: Optional[Settings] = None
_lock = threading.Lock()


def config_path(explicit: str | Path | None = None) -> Path:
    """--config flag, then $CHATPILOT_CONFIG, then config/config.yaml."""
    if explicit is not None:
        return Path(explicit)
    from_env = os.environ.get(CONFIG_PATH_ENV)
    return Path(from_env) if from_env else DEFAULT_CONFIG_PATH


def _yaml_sections(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return {key: value for key, value in data.items() if key in _SECTIONS}


def load_settings(path: str | Path | None = None) -> Settings:
    """Build Settings from config.yaml + environment and make it the current instance."""
    global _current
    settings = Settings(**_yaml_sections(config_path(path)))
    with _lock:
        _current = settings
    return settings


def get_settings() -> Settings:
    """The instance from the last load_settings() call, loading defaults on first use."""
    with _lock:
        current = _current
    return current if current is not None else load_settings()
