"""Centralized configuration — Pydantic BaseSettings with TOML + dotenv sources.

Operational settings live in config.toml. Environment variables override
them using ``__`` as the nested delimiter (e.g. ``CONTAINER__IMAGE``,
``EXECUTION__TOOL_TIMEOUTS__NMAP``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from reconpipe.config import get_settings

    s = get_settings()
    print(s.container.image)
    print(s.timeout_for("nmap"))
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models — reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class ContainerConfig(_StrictModel):
    image: str = "reconpipe-worker:latest"
    name_prefix: str = "reconpipe-worker-"  # session containers: prefix + scan_run_id
    ephemeral_prefix: str = "reconpipe-"  # single-use containers
    memory_mb: int = 512
    cpu_shares: int = 256
    network_mode: str = "bridge"
    privileged: bool = True  # raw-socket scanners (nmap -sS, ping)
    cap_add: list[str] = ["NET_ADMIN", "NET_RAW"]
    user: str = "0"

    @field_validator("memory_mb", "cpu_shares")
    @classmethod
    def positive(cls, v: int) -> int:
        return max(1, v)


class DockerConfig(_StrictModel):
    base_url: str | None = None  # None → DOCKER_HOST / default socket
    api_timeout_s: int = 60


# Seconds. Keys are tool names as used in ToolInvocation.tool.
DEFAULT_TOOL_TIMEOUTS: dict[str, float] = {
    "whois": 30,
    "dig": 30,
    "host": 30,
    "curl": 30,
    "ping": 30,
    "httpx": 120,
    "whatweb": 120,
    "wafw00f": 120,
    "nmap": 300,
    "subfinder": 300,
    "nikto": 180,
    "nuclei": 600,
    "dirsearch": 600,
    "gobuster": 600,
}


class ExecutionConfig(_StrictModel):
    default_timeout_s: float = 120
    tool_timeouts: dict[str, float] = DEFAULT_TOOL_TIMEOUTS
    log_stdout_cap: int = 900_000  # chars kept in persisted log copies
    log_stderr_cap: int = 500


class PipelineConfig(_StrictModel):
    web_ports: list[int] = [80, 443, 8080, 8443, 3000, 3001, 5000, 8000, 8888, 9090]


class ReaperConfig(_StrictModel):
    enabled: bool = True
    session_ttl_s: float = 600  # 10 minutes idle
    interval_s: float = 300
    initial_delay_s: float = 30


class ServerConfig(_StrictModel):
    host: str = "0.0.0.0"
    port: int = 8585


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    container: ContainerConfig = ContainerConfig()
    docker: DockerConfig = DockerConfig()
    execution: ExecutionConfig = ExecutionConfig()
    pipeline: PipelineConfig = PipelineConfig()
    reaper: ReaperConfig = ReaperConfig()
    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()
    data_dir: Path = Path("data")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def db_path(self) -> Path:
        return self.data_dir.resolve() / "reconpipe.db"

    @cached_property
    def web_ports(self) -> frozenset[int]:
        return frozenset(self.pipeline.web_ports)

    def timeout_for(self, tool: str) -> float:
        """Default timeout for *tool* in seconds, falling back to the global default."""
        return self.execution.tool_timeouts.get(tool, self.execution.default_timeout_s)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
