"""
Adapter Registry: central registry mapping engine names to adapter instances.

Usage:
    from .adapters import get_adapter
    adapter = get_adapter("postgres")
"""

from ...errors import ValidationError
from .base import (
    BaseAdapter,
    CliSession,
    ConfigApplyResult,
    ConfigSnapshot,
    ContainerSpec,
    DatabaseCategory,
    InstanceEndpoint,
)
from .postgresql import PostgreSQLAdapter
from .redis import RedisAdapter
from .valkey import ValkeyAdapter

# =============================================================================
# Adapter Registry
# =============================================================================

_ADAPTERS: dict[str, BaseAdapter] = {
    "postgres": PostgreSQLAdapter(),
    "redis": RedisAdapter(),
    "valkey": ValkeyAdapter(),
}


def get_adapter(engine_name: str) -> BaseAdapter:
    """Get the adapter instance for a database engine.

    Raises:
        ValidationError: If the engine name is not registered.
    """
    adapter = _ADAPTERS.get(engine_name)
    if adapter is None:
        supported = ", ".join(sorted(_ADAPTERS.keys()))
        raise ValidationError(f"Unknown database engine '{engine_name}'. Supported: {supported}")
    return adapter


def list_engines() -> list[dict]:
    """Return summary info for all supported engines."""
    engines = []
    for name, adapter in sorted(_ADAPTERS.items()):
        engines.append({
            "engine": name,
            "display_name": adapter.display_name,
            "category": adapter.category.value,
            "default_port": adapter.default_port,
            "default_version": adapter.default_version,
            "image": adapter.get_image(adapter.default_version),
            "config_format": adapter.config_format,
        })
    return engines


__all__ = [
    "BaseAdapter",
    "CliSession",
    "ConfigApplyResult",
    "ConfigSnapshot",
    "ContainerSpec",
    "DatabaseCategory",
    "InstanceEndpoint",
    "get_adapter",
    "list_engines",
]
