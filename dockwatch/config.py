from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dockwatch.models import LogMode

APP_NAME = "dockwatch"
DEFAULT_SOCKET = "/var/run/docker.sock"
CONTAINER_RUNTIME_VALUE = "container"


def get_app_dir() -> Path:
    return Path.home() / f".{APP_NAME}"


def get_log_dir() -> Path:
    return get_app_dir() / "logs"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DOCKWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    docker_host: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DOCKWATCH_DOCKER_HOST", "DOCKER_HOST", "docker_host"),
    )
    docker_interval_ms: int = 1000
    request_timeout_sec: float = 10.0

    show_std_err: bool = True
    log_mode: LogMode = LogMode.plain
    show_timestamp: bool = True

    runtime: str = ""
    show_self: bool = False

    action_queue_size: int = 32
    frame_rate_ms: int = 100
    exec_shell: str = "sh"

    log_level: str = "INFO"
    log_dir: Path = Field(default_factory=get_log_dir)
    log_console: bool = False

    @field_validator("docker_interval_ms")
    @classmethod
    def validate_interval(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("docker update interval needs to be greater than 0")
        return value

    @field_validator("action_queue_size", "frame_rate_ms")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be greater than 0")
        return value

    @field_validator("docker_host", mode="before")
    @classmethod
    def normalize_docker_host(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @property
    def in_container(self) -> bool:
        return self.runtime.strip().lower() == CONTAINER_RUNTIME_VALUE

    @property
    def interval_sec(self) -> float:
        return self.docker_interval_ms / 1000

    @property
    def frame_interval_sec(self) -> float:
        return self.frame_rate_ms / 1000


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
