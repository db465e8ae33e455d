"""
Redis Database Adapter

Password-protected, append-only Redis containers. Data is forked with the
replication protocol: the target briefly becomes a replica of the source,
takes a full sync, then is promoted back to a primary. Configuration is read
and written at runtime with CONFIG GET / CONFIG SET / CONFIG REWRITE.
"""

import asyncio
import logging
import re
from typing import TYPE_CHECKING

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from ...errors import ContainerRuntimeError, ValidationError
from .base import (
    BaseAdapter,
    CliSession,
    ConfigApplyResult,
    ConfigSnapshot,
    DatabaseCategory,
    InstanceEndpoint,
)

if TYPE_CHECKING:
    from ..container_orchestrator import ContainerOrchestrator

logger = logging.getLogger("uvicorn.error")

VERSION_PATTERN = re.compile(r"\d+\.\d+")

# Never exposed through, or writable by, the configuration bridge
SENSITIVE_CONFIG_KEYS = frozenset({"requirepass", "masterauth"})

REPLICATION_POLL_INTERVAL = 0.5


def parse_config_lines(content: str) -> dict[str, str]:
    """Parse ``key value`` lines; blank lines and ``#`` comments are skipped."""
    settings = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, _, value = line.partition(" ")
        settings[key.lower()] = value.strip()
    return settings


class RedisAdapter(BaseAdapter):
    """Redis key-value engine adapter."""

    engine_name = "redis"
    display_name = "Redis"
    category = DatabaseCategory.KEY_VALUE
    default_port = 6379
    default_version = "7.4"
    default_username = "default"
    config_format = "kv"

    image_repository = "redis"
    server_binary = "redis-server"
    cli_binary = "redis-cli"

    def is_valid_version(self, version: str) -> bool:
        return VERSION_PATTERN.fullmatch(version) is not None

    def get_image(self, version: str) -> str:
        return f"{self.image_repository}:{version}-alpine"

    def get_mount_path(self, version: str) -> str:
        return "/data"

    def get_environment(self, username: str, password: str) -> dict[str, str]:
        return {}

    def get_command(self, password: str) -> list[str]:
        return [self.server_binary, "--requirepass", password, "--appendonly", "yes"]

    def get_cli_session(self, username: str, password: str) -> CliSession:
        return CliSession(
            argv=[self.cli_binary, "--no-auth-warning"],
            env={"REDISCLI_AUTH": password},
        )

    def get_connection_string(self, host: str, port: int, username: str, password: str) -> str:
        return f"redis://{username}:{password}@{host}:{port}"

    def connect(self, endpoint: InstanceEndpoint) -> aioredis.Redis:
        return aioredis.Redis(
            host=endpoint.host,
            port=endpoint.port,
            password=endpoint.password,
            decode_responses=True,
            socket_connect_timeout=10,
        )

    # ---- Data Fork -----------------------------------------------------------

    async def fork_data(
        self,
        gateway: "ContainerOrchestrator",
        source: InstanceEndpoint,
        target: InstanceEndpoint,
        timeout: float,
    ) -> None:
        """
        Copy the source dataset into the target through replication.

        The target is always promoted back with ``REPLICAOF NO ONE`` and its
        ``masterauth`` cleared, whether or not the sync finished.
        """
        logger.info(f"Forking {self.engine_name} data {source.host} -> {target.host}")
        client = self.connect(target)
        try:
            try:
                await client.config_set("masterauth", source.password)
                await client.replicaof(source.host, source.port)
                await self._wait_for_sync(client, source, timeout)
            finally:
                await client.replicaof("NO", "ONE")
                await client.config_set("masterauth", "")
        except RedisError as e:
            raise ContainerRuntimeError(
                f"{self.display_name} fork from {source.host} to {target.host} failed: {e}"
            )
        finally:
            await client.aclose()
        logger.info(f"{self.display_name} fork {source.host} -> {target.host} completed")

    async def _wait_for_sync(
        self, client: aioredis.Redis, source: InstanceEndpoint, timeout: float
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            info = await client.info("replication")
            link_up = info.get("master_link_status") == "up"
            if link_up and not int(info.get("master_sync_in_progress", 0)):
                return
            if loop.time() >= deadline:
                raise ContainerRuntimeError(
                    f"Replication from {source.host} did not complete within {timeout}s"
                )
            await asyncio.sleep(REPLICATION_POLL_INTERVAL)

    # ---- Configuration -------------------------------------------------------

    async def read_config(
        self, gateway: "ContainerOrchestrator", endpoint: InstanceEndpoint
    ) -> ConfigSnapshot:
        client = self.connect(endpoint)
        try:
            values = await client.config_get("*")
        except RedisError as e:
            raise ContainerRuntimeError(f"CONFIG GET failed on {endpoint.host}: {e}")
        finally:
            await client.aclose()

        lines = [
            f"{key} {value}"
            for key, value in sorted(values.items())
            if key not in SENSITIVE_CONFIG_KEYS
        ]
        return ConfigSnapshot(content="\n".join(lines), source="runtime")

    async def apply_config(
        self, gateway: "ContainerOrchestrator", endpoint: InstanceEndpoint, content: str
    ) -> ConfigApplyResult:
        """
        Apply every changed key with CONFIG SET, then persist with CONFIG REWRITE.

        Unknown keys and values the engine rejects raise ValidationError.
        A failed rewrite only produces a warning.
        """
        desired = parse_config_lines(content)
        warnings = []
        client = self.connect(endpoint)
        try:
            current = await client.config_get("*")

            changed = {}
            for key, value in desired.items():
                if key in SENSITIVE_CONFIG_KEYS:
                    warnings.append(f"'{key}' cannot be changed through configuration; ignored")
                    continue
                if key not in current:
                    raise ValidationError(f"Unknown configuration key '{key}'")
                if current[key] != value:
                    changed[key] = value

            for key, value in changed.items():
                try:
                    await client.config_set(key, value)
                except ResponseError as e:
                    raise ValidationError(f"Invalid value for '{key}': {e}")
                logger.info(f"CONFIG SET {key} on {endpoint.host}")

            if changed:
                try:
                    await client.config_rewrite()
                except ResponseError as e:
                    warnings.append(f"CONFIG REWRITE failed, changes will not survive a restart: {e}")
        except ValidationError:
            raise
        except RedisError as e:
            raise ContainerRuntimeError(f"Applying configuration on {endpoint.host} failed: {e}")
        finally:
            await client.aclose()

        return ConfigApplyResult(applied=True, warnings=warnings, requires_restart=False)
