"""Configuration for Winlock sessions."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from winlock.errors import ConfigError
from winlock.retry import Backoff

DEFAULT_MODEL = "openrouter:qwen/qwen3-coder-next"
BUILTIN_SERVER_NAME = "workspace"


class RetryConfig(BaseModel):
    """Capped exponential backoff settings."""

    initial_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=8.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_attempts: int = Field(default=5, ge=0)

    @model_validator(mode="after")
    def _check_cap(self) -> RetryConfig:
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self

    def backoff(self) -> Backoff:
        return Backoff(
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
            max_attempts=self.max_attempts,
        )


class ServerConfig(BaseModel):
    """One capability server endpoint."""

    name: str = Field(..., min_length=1)
    transport: Literal["stdio", "tcp", "builtin"] = "stdio"
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: Path | None = None
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    queue_while_disconnected: bool = True
    version_window: int = Field(default=0, ge=0)
    reconnect: RetryConfig = Field(default_factory=RetryConfig)

    @model_validator(mode="after")
    def _check_endpoint(self) -> ServerConfig:
        if self.transport == "stdio" and not self.command:
            raise ValueError(f"server {self.name!r}: stdio transport needs a command")
        if self.transport == "tcp" and (not self.host or self.port is None):
            raise ValueError(f"server {self.name!r}: tcp transport needs host and port")
        return self


class SessionConfig(BaseModel):
    """Everything one session needs besides its transcript."""

    backend: str = "republic"
    model: str = DEFAULT_MODEL
    api_key: str | None = None
    api_base: str | None = None
    max_tokens: int = Field(default=4096, ge=1)
    workspace: Path = Field(default_factory=Path.cwd)
    servers: list[ServerConfig] = Field(default_factory=list)
    rule_files: list[str] = Field(default_factory=lambda: ["AGENTS.md"])
    max_in_flight: int = Field(default=8, ge=1)
    tool_timeout: float = Field(default=60.0, gt=0)
    backend_timeout: float = Field(default=120.0, gt=0)
    backend_retry: RetryConfig = Field(default_factory=RetryConfig)
    max_steps: int = Field(default=50, ge=1)
    budget_chars: int = Field(default=200_000, ge=1)
    preview_chars: int = Field(default=240, ge=0)

    @model_validator(mode="after")
    def _check_servers(self) -> SessionConfig:
        names = [server.name for server in self.servers]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate server names: {', '.join(duplicates)}")
        return self

    @classmethod
    def build(cls, **values: Any) -> SessionConfig:
        """Validate ``values``, reporting failures as ``ConfigError``."""
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise ConfigError(_describe(exc)) from exc


class Settings(BaseSettings):
    """Process defaults read from ``WINLOCK_*`` environment variables and ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="WINLOCK_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    backend: str = Field(default="republic", description="Backend adapter name (republic, echo)")
    model: str = Field(default=DEFAULT_MODEL, description="provider:model for the republic backend")
    api_key: str | None = Field(default=None, description="API key for the model provider")
    api_base: str | None = Field(default=None, description="Optional API base URL")
    max_tokens: int = Field(default=4096, ge=1)
    home: Path = Field(default=Path.home() / ".winlock", description="Directory holding session transcripts")
    servers: list[ServerConfig] = Field(default_factory=list, description="Capability servers as a JSON list")
    builtin_tools: bool = Field(default=True, description="Serve the builtin workspace tools")
    max_in_flight: int = Field(default=8, ge=1)
    tool_timeout: float = Field(default=60.0, gt=0)
    backend_timeout: float = Field(default=120.0, gt=0)
    retry_attempts: int = Field(default=5, ge=0)
    retry_initial_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=8.0, ge=0)
    max_steps: int = Field(default=50, ge=1)
    budget_chars: int = Field(default=200_000, ge=1)
    log_level: str = Field(default="INFO", description="Log level")

    def resolve_home(self) -> Path:
        return self.home.expanduser().resolve()

    def session_config(self, workspace: Path, **overrides: Any) -> SessionConfig:
        servers = list(self.servers)
        if self.builtin_tools and all(server.name != BUILTIN_SERVER_NAME for server in servers):
            servers.insert(0, ServerConfig(name=BUILTIN_SERVER_NAME, transport="builtin"))
        values: dict[str, Any] = {
            "backend": self.backend,
            "model": self.model,
            "api_key": self.api_key,
            "api_base": self.api_base,
            "max_tokens": self.max_tokens,
            "workspace": workspace.resolve(),
            "servers": servers,
            "max_in_flight": self.max_in_flight,
            "tool_timeout": self.tool_timeout,
            "backend_timeout": self.backend_timeout,
            "backend_retry": {
                "initial_delay": self.retry_initial_delay,
                "max_delay": self.retry_max_delay,
                "max_attempts": self.retry_attempts,
            },
            "max_steps": self.max_steps,
            "budget_chars": self.budget_chars,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return SessionConfig.build(**values)


def load_settings(**overrides: Any) -> Settings:
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        raise ConfigError(_describe(exc)) from exc


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors(include_url=False):
        location = ".".join(str(item) for item in error.get("loc", ())) or "config"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)
