"""
datafork Services

Service layer for database orchestration and branching. The container
gateway, vault and volume service are built once from Settings and shared
by the managers.
"""

from dataclasses import dataclass

from ..config import Settings
from .adapters import get_adapter, list_engines
from .branch_manager import BranchManager, BranchResult
from .config_manager import ConfigManager, ConfigUpdateResult, DatabaseConfig
from .container_orchestrator import ContainerOrchestrator
from .credential_manager import CredentialManager
from .instance_manager import InstanceManager
from .instance_store import InstanceStore
from .volume_service import VolumeService


@dataclass
class DatabaseServices:
    instances: InstanceManager
    branches: BranchManager
    configs: ConfigManager


def create_services(settings: Settings) -> DatabaseServices:
    """Wire the managers for one process. Raises ConfigurationError on a bad key."""
    instances = InstanceManager.from_settings(settings)
    return DatabaseServices(
        instances=instances,
        branches=BranchManager(instances),
        configs=ConfigManager(instances),
    )


__all__ = [
    "get_adapter",
    "list_engines",
    "BranchManager",
    "BranchResult",
    "ConfigManager",
    "ConfigUpdateResult",
    "ContainerOrchestrator",
    "CredentialManager",
    "DatabaseConfig",
    "DatabaseServices",
    "InstanceManager",
    "InstanceStore",
    "VolumeService",
    "create_services",
]
