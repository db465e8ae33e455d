"""
PostgreSQL Database Adapter

Container bootstrap for the official postgres alpine images, with
pg_stat_statements preloaded, plus the logical dump/restore fork and the
postgresql.conf configuration bridge.
"""

import logging
from typing import TYPE_CHECKING

from ...errors import ContainerRuntimeError
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

# Images from 18 on keep data in a versioned subdirectory of /var/lib/postgresql
VERSIONED_LAYOUT_MAJOR = 18

RESTART_PENDING_ERROR = "setting could not be applied"

# Runs inside the target container. Credentials and hosts arrive through the
# exec environment so nothing sensitive is interpolated into the script.
FORK_SCRIPT = """\
dump_rc_file=$(mktemp)
{ PGPASSWORD="$SOURCE_PGPASSWORD" PGCONNECT_TIMEOUT=10 pg_dump \
    -h "$SOURCE_HOST" -p "$SOURCE_PORT" -U "$SOURCE_USER" -d postgres -Fc; \
  echo $? > "$dump_rc_file"; } \
| PGPASSWORD="$TARGET_PGPASSWORD" PGCONNECT_TIMEOUT=10 pg_restore \
    -h localhost -U "$TARGET_USER" -d postgres \
    --clean --if-exists --no-owner --no-privileges
restore_rc=$?
dump_rc=$(cat "$dump_rc_file")
rm -f "$dump_rc_file"
echo "pg_dump exit=$dump_rc pg_restore exit=$restore_rc" >&2
[ "$dump_rc" = "0" ] && [ "$restore_rc" = "0" ]
"""

WRITE_CONFIG_SCRIPT = 'printf "%s" "$CONFIG_CONTENT" > "$CONFIG_PATH"'


class PostgreSQLAdapter(BaseAdapter):
    """PostgreSQL database engine adapter."""

    engine_name = "postgres"
    display_name = "PostgreSQL"
    category = DatabaseCategory.RELATIONAL
    default_port = 5432
    default_version = "16"
    default_username = "postgres"
    config_format = "file"

    def is_valid_version(self, version: str) -> bool:
        return version.isascii() and version.isdigit()

    def get_image(self, version: str) -> str:
        return f"postgres:{version}-alpine"

    def get_mount_path(self, version: str) -> str:
        if version.isdigit() and int(version) >= VERSIONED_LAYOUT_MAJOR:
            return "/var/lib/postgresql"
        return "/var/lib/postgresql/data"

    def get_environment(self, username: str, password: str) -> dict[str, str]:
        return {
            "POSTGRES_USER": username,
            "POSTGRES_PASSWORD": password,
            "POSTGRES_DB": "postgres",
            "POSTGRES_HOST_AUTH_METHOD": "scram-sha-256",
            "POSTGRES_INITDB_ARGS": "--auth-host=scram-sha-256",
        }

    def get_command(self, password: str) -> list[str]:
        return [
            "postgres",
            "-c", "shared_preload_libraries=pg_stat_statements",
            "-c", "pg_stat_statements.track=all",
        ]

    def get_cli_session(self, username: str, password: str) -> CliSession:
        return CliSession(
            argv=["psql", "-U", username, "-d", "postgres"],
            env={"PGPASSWORD": password},
        )

    def get_query_command(self, username: str, sql: str) -> list[str]:
        """psql invocation returning bare, unaligned rows for ``sql``."""
        return ["psql", "-U", username, "-d", "postgres", "-tAX", "-c", sql]

    def get_connection_string(self, host: str, port: int, username: str, password: str) -> str:
        return f"postgresql://{username}:{password}@{host}:{port}/postgres"

    # ---- Data Fork -----------------------------------------------------------

    async def fork_data(
        self,
        gateway: "ContainerOrchestrator",
        source: InstanceEndpoint,
        target: InstanceEndpoint,
        timeout: float,
    ) -> None:
        """
        Stream ``pg_dump -Fc`` of the source into ``pg_restore`` on the target.

        The pipeline runs inside the target container and reaches the source
        over the shared network. A restore that fails midway is not rolled back.
        """
        logger.info(f"Forking postgres data {source.host} -> {target.host}")
        result = await gateway.exec(
            target.container_ref,
            ["sh", "-c", FORK_SCRIPT],
            env={
                "SOURCE_HOST": source.host,
                "SOURCE_PORT": str(source.port),
                "SOURCE_USER": source.username,
                "SOURCE_PGPASSWORD": source.password,
                "TARGET_USER": target.username,
                "TARGET_PGPASSWORD": target.password,
            },
            timeout=timeout,
        )
        if result.exit_code != 0:
            raise ContainerRuntimeError(
                f"Postgres fork from {source.host} failed (exit {result.exit_code}): "
                f"{result.stderr[-2000:]}"
            )
        logger.info(f"Postgres fork {source.host} -> {target.host} completed")

    # ---- Configuration -------------------------------------------------------

    async def _query(
        self, gateway: "ContainerOrchestrator", endpoint: InstanceEndpoint, sql: str
    ) -> str:
        result = await gateway.exec(
            endpoint.container_ref,
            self.get_query_command(endpoint.username, sql),
            env={"PGPASSWORD": endpoint.password},
            timeout=30.0,
        )
        if result.exit_code != 0:
            raise ContainerRuntimeError(f"psql query failed ({sql}): {result.stderr}")
        return result.stdout.strip()

    async def read_config(
        self, gateway: "ContainerOrchestrator", endpoint: InstanceEndpoint
    ) -> ConfigSnapshot:
        path = await self._query(gateway, endpoint, "SHOW config_file")
        result = await gateway.exec(endpoint.container_ref, ["cat", path], timeout=30.0)
        if result.exit_code != 0:
            raise ContainerRuntimeError(f"Could not read {path}: {result.stderr}")

        if not result.stdout.strip():
            return ConfigSnapshot(content="", source="empty")
        return ConfigSnapshot(content=result.stdout, source="file")

    async def apply_config(
        self, gateway: "ContainerOrchestrator", endpoint: InstanceEndpoint, content: str
    ) -> ConfigApplyResult:
        """
        Overwrite postgresql.conf and reload it.

        Settings that only take effect after a restart are reported through
        ``requires_restart`` together with one warning per setting.
        """
        path = await self._query(gateway, endpoint, "SHOW config_file")
        result = await gateway.exec(
            endpoint.container_ref,
            ["sh", "-c", WRITE_CONFIG_SCRIPT],
            env={"CONFIG_CONTENT": content, "CONFIG_PATH": path},
            timeout=30.0,
        )
        if result.exit_code != 0:
            raise ContainerRuntimeError(f"Could not write {path}: {result.stderr}")

        await self._query(gateway, endpoint, "SELECT pg_reload_conf()")

        rows = await self._query(
            gateway,
            endpoint,
            "SELECT name, error FROM pg_file_settings WHERE error IS NOT NULL",
        )
        warnings = []
        requires_restart = False
        for line in rows.splitlines():
            if not line.strip():
                continue
            name, _, error = line.partition("|")
            if error == RESTART_PENDING_ERROR:
                requires_restart = True
                warnings.append(f"'{name}' takes effect after a restart")
            elif name:
                warnings.append(f"'{name}': {error}")
            else:
                # syntax errors have no setting name
                warnings.append(error)

        return ConfigApplyResult(applied=True, warnings=warnings, requires_restart=requires_restart)
