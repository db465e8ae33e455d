"""
Base Database Adapter: abstract interface for all database engine adapters.

Every adapter must subclass BaseAdapter and implement all abstract methods.
An adapter is both the engine's container provider (image, port, mount path,
bootstrap environment and command, CLI) and its fork strategy (how live data
is copied from one running instance into another).

Data classes define the shared structures handed to the container gateway.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from ...errors import ValidationError

if TYPE_CHECKING:
    from ..container_orchestrator import ContainerOrchestrator


# =============================================================================
# Data Classes
# =============================================================================

class DatabaseCategory(str, Enum):
    """Database engine categories"""
    RELATIONAL = "relational"
    KEY_VALUE = "key_value"


@dataclass
class ContainerSpec:
    """Everything the gateway needs to create one database container. Never persisted."""
    name: str
    image: str
    internal_port: int
    host_port: int
    data_dir: str
    mount_path: str
    cpu_limit: float
    memory_limit_mb: int
    public_exposed: bool = False
    env_vars: dict[str, str] = field(default_factory=dict)
    command: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def bind_address(self) -> str:
        return "0.0.0.0" if self.public_exposed else "127.0.0.1"


@dataclass
class InstanceEndpoint:
    """A running instance reachable on the shared network, with its credentials."""
    container_ref: str
    host: str
    port: int
    username: str
    password: str


@dataclass
class CliSession:
    """Argv and environment for an interactive exec session."""
    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class ConfigSnapshot:
    """Engine configuration as read from a running instance."""
    content: str
    source: str  # "file", "runtime", "empty"
    warnings: list[str] = field(default_factory=list)


@dataclass
class ConfigApplyResult:
    """Outcome of applying new configuration to a running instance."""
    applied: bool
    warnings: list[str] = field(default_factory=list)
    requires_restart: bool = False


# =============================================================================
# Abstract Base Adapter
# =============================================================================

class BaseAdapter(ABC):
    """
    Abstract base class for database engine adapters.

    Attributes:
        engine_name: Machine-readable engine identifier (e.g. "postgres").
        display_name: Human-readable name.
        category: DatabaseCategory enum value.
        default_port: Listening port inside the container.
        default_version: Version used when the caller does not pick one.
        default_username: Superuser created by the bootstrap.
        config_format: "file" for engines configured through a file,
            "kv" for engines configured at runtime.
    """

    engine_name: str = ""
    display_name: str = ""
    category: DatabaseCategory = DatabaseCategory.RELATIONAL
    default_port: int = 0
    default_version: str = ""
    default_username: str = ""
    config_format: str = "file"

    # ---- Versions & Images ---------------------------------------------------

    @abstractmethod
    def is_valid_version(self, version: str) -> bool:
        """Return True when ``version`` is acceptable for this engine."""
        ...

    def validate_version(self, version: Optional[str]) -> str:
        """Return the version to use, or raise ValidationError."""
        if version is None or version == "":
            return self.default_version
        version = version.strip()
        if not self.is_valid_version(version):
            raise ValidationError(f"Invalid {self.display_name} version '{version}'")
        return version

    @abstractmethod
    def get_image(self, version: str) -> str:
        """Return the image reference for ``version``."""
        ...

    # ---- Container Management ------------------------------------------------

    @abstractmethod
    def get_mount_path(self, version: str) -> str:
        """Return the data directory path inside the container."""
        ...

    @abstractmethod
    def get_environment(self, username: str, password: str) -> dict[str, str]:
        """Return the bootstrap environment for a new container."""
        ...

    @abstractmethod
    def get_command(self, password: str) -> list[str]:
        """Return the bootstrap command for a new container."""
        ...

    def build_container_spec(
        self,
        container_name: str,
        version: str,
        username: str,
        password: str,
        host_port: int,
        data_dir: Path,
        cpu_limit: float,
        memory_limit_mb: int,
        public_exposed: bool = False,
        labels: Optional[dict[str, str]] = None,
    ) -> ContainerSpec:
        return ContainerSpec(
            name=container_name,
            image=self.get_image(version),
            internal_port=self.default_port,
            host_port=host_port,
            data_dir=str(data_dir),
            mount_path=self.get_mount_path(version),
            cpu_limit=cpu_limit,
            memory_limit_mb=memory_limit_mb,
            public_exposed=public_exposed,
            env_vars=self.get_environment(username, password),
            command=self.get_command(password),
            labels=dict(labels or {}),
        )

    # ---- Exec Sessions -------------------------------------------------------

    @abstractmethod
    def get_cli_session(self, username: str, password: str) -> CliSession:
        """Return the CLI argv and env for an interactive session."""
        ...

    # ---- Data Fork -----------------------------------------------------------

    @abstractmethod
    async def fork_data(
        self,
        gateway: "ContainerOrchestrator",
        source: InstanceEndpoint,
        target: InstanceEndpoint,
        timeout: float,
    ) -> None:
        """
        Copy the source instance's current data into the target instance.

        Both containers must be running. The target's existing data is replaced.

        Raises:
            ContainerRuntimeError: If the copy fails.
        """
        ...

    # ---- Configuration -------------------------------------------------------

    @abstractmethod
    async def read_config(
        self, gateway: "ContainerOrchestrator", endpoint: InstanceEndpoint
    ) -> ConfigSnapshot:
        """Read the live configuration of a running instance."""
        ...

    @abstractmethod
    async def apply_config(
        self, gateway: "ContainerOrchestrator", endpoint: InstanceEndpoint, content: str
    ) -> ConfigApplyResult:
        """Apply ``content`` as the new configuration of a running instance."""
        ...

    # ---- Utilities -----------------------------------------------------------

    def get_connection_string(self, host: str, port: int, username: str, password: str) -> str:
        """Generate a connection string for client applications."""
        return ""
