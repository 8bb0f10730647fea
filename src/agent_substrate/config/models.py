from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field


class AppSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    project_path: str = "."


class FileRotationSettings(BaseModel):
    """
    Date-based rotation settings (daily).

    This maps cleanly to Python's standard library TimedRotatingFileHandler behavior.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backup_count: int = 7


class FileLoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = ""
    rotation: FileRotationSettings = FileRotationSettings()


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    level: str = "INFO"
    file: FileLoggingSettings = FileLoggingSettings()
    # Third-party loggers capped at WARNING regardless of `level`.
    quiet_loggers: Sequence[str] = ("asyncio", "aiohttp.access")


class StoreSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    root_dir: str = "data/store"


class CacheSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    key_prefix: str = "symbols/"
    reload_in_background: bool = True
    reload_batch_size: int = Field(default=64, ge=1)

    # Remote operation used to fetch a file's symbol tree on a cache miss.
    symbols_endpoint: str = "serena"
    symbols_operation: str = "get_symbols_overview"
    symbols_depth: int = 1


class InvokerSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    default_timeout_seconds: float = Field(default=60.0, gt=0)
    long_timeout_seconds: float = Field(default=120.0, gt=0)
    long_running_operations: Sequence[str] = ("execute_shell_command",)
    max_retries: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=1.0, ge=0)


class EndpointSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    transport: Literal["stdio", "http"] = "stdio"

    # stdio transport
    command: str = ""
    args: Sequence[str] = ()
    cwd: Optional[str] = None
    env: Mapping[str, str] = Field(default_factory=dict)
    # MCP initialize handshake before the first request.
    handshake: bool = True
    protocol_version: str = "2024-11-05"

    # http transport
    url: str = ""
    headers: Mapping[str, str] = Field(default_factory=dict)


class TaskSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    state_key: str = "tasks/state"


class AppConfig(BaseModel):
    """Effective runtime configuration after applying all precedence rules."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    app: AppSettings = AppSettings()
    logging: LoggingSettings = LoggingSettings()
    store: StoreSettings = StoreSettings()
    cache: CacheSettings = CacheSettings()
    invoker: InvokerSettings = InvokerSettings()
    tasks: TaskSettings = TaskSettings()
    endpoints: Sequence[EndpointSettings] = ()


@dataclass(frozen=True, slots=True)
class ConfigLoadRequest:
    """
    Optional inputs for a configuration loader.

    Implementations may use these to control where configuration is read from.
    """

    yaml_path: str = "data/config/config.yaml"
    env_prefix: str = "APP__"
    dotenv_path: Optional[str] = "data/.env"
