"""
datafork - Settings

All settings are read from DATAFORK_* environment variables via
pydantic-settings. The encryption key has no default and is validated when
the credential vault is built.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class Settings(BaseSettings):
    """Process-wide settings, immutable after startup."""

    model_config = SettingsConfigDict(
        env_prefix="DATAFORK_",
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    database_url: str = "sqlite+aiosqlite:///./datafork.db"
    data_dir: Path = Path("/var/lib/datafork/databases")
    encryption_key: str = ""

    # Container runtime
    container_runtime: Literal["docker", "podman"] = "docker"
    runtime_socket: Optional[str] = None
    network_name: str = "datafork_network"

    # Networking
    public_host: str = "localhost"
    port_base: int = 5432

    # Timings (seconds)
    health_timeout: float = 60.0
    health_interval: float = 1.0
    fork_settle_delay: float = 2.0
    fork_timeout: float = 600.0


def load_settings() -> Settings:
    """Build Settings from the environment. Invalid values raise ConfigurationError."""
    try:
        return Settings()
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid DATAFORK_* settings: {e}")


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
