"""
Config Manager for datafork

Reads and writes the live configuration of a running database. Postgres is
configured through its postgresql.conf file, Redis and Valkey through
CONFIG GET / CONFIG SET at runtime; the adapters know the details.
"""

import logging
from dataclasses import asdict, dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError
from ..models import DatabaseInstance
from .adapters import get_adapter
from .instance_manager import InstanceManager

logger = logging.getLogger("uvicorn.error")

MAX_CONFIG_BYTES = 1024 * 1024


@dataclass
class DatabaseConfig:
    database_id: str
    database_type: str
    format: str  # "file" or "kv"
    source: str  # "file", "runtime" or "empty"
    content: str
    warnings: list[str] = field(default_factory=list)
    requires_restart: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ConfigUpdateResult:
    database_id: str
    database_type: str
    applied: bool
    warnings: list[str] = field(default_factory=list)
    requires_restart: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class ConfigManager:
    """Configuration bridge for running databases."""

    def __init__(self, instances: InstanceManager):
        self.instances = instances

    async def _load_running(self, db: AsyncSession, database_id: str, user_id: str) -> DatabaseInstance:
        record = await self.instances.load_owned(db, database_id, user_id)
        if not record.is_running:
            raise ValidationError("Database must be running to access its configuration")
        return record

    async def get_config(self, db: AsyncSession, database_id: str, user_id: str) -> DatabaseConfig:
        record = await self._load_running(db, database_id, user_id)
        adapter = get_adapter(record.engine_type)
        snapshot = await adapter.read_config(self.instances.gateway, self.instances.get_endpoint(record))
        return DatabaseConfig(
            database_id=record.id,
            database_type=record.engine_type,
            format=adapter.config_format,
            source=snapshot.source,
            content=snapshot.content,
            warnings=snapshot.warnings,
        )

    async def update_config(
        self, db: AsyncSession, database_id: str, user_id: str, content: str
    ) -> ConfigUpdateResult:
        if len(content.encode("utf-8")) > MAX_CONFIG_BYTES:
            raise ValidationError(f"Configuration exceeds {MAX_CONFIG_BYTES} bytes")
        if "\x00" in content:
            raise ValidationError("Configuration must not contain NUL characters")

        record = await self._load_running(db, database_id, user_id)
        adapter = get_adapter(record.engine_type)
        result = await adapter.apply_config(
            self.instances.gateway, self.instances.get_endpoint(record), content
        )
        logger.info(
            f"Applied configuration to database {record.id} "
            f"({len(result.warnings)} warnings, restart required: {result.requires_restart})"
        )
        return ConfigUpdateResult(
            database_id=record.id,
            database_type=record.engine_type,
            applied=result.applied,
            warnings=result.warnings,
            requires_restart=result.requires_restart,
        )
