"""Tests for the engine adapters: container bootstrap and fork procedures."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from datafork.errors import ContainerRuntimeError, ValidationError
from datafork.services.adapters import get_adapter, list_engines
from datafork.services.adapters.base import InstanceEndpoint
from datafork.services.adapters.redis import parse_config_lines
from datafork.services.container_orchestrator import ContainerOrchestrator, ExecResult

SOURCE = InstanceEndpoint(
    container_ref="src000000001", host="datafork-postgres-app-1234abcd",
    port=5432, username="postgres", password="sourcepass",
)
TARGET = InstanceEndpoint(
    container_ref="tgt000000002", host="datafork-postgres-app-dev-5678abcd",
    port=5432, username="postgres", password="targetpass",
)


class TestRegistry:
    def test_known_engines(self):
        assert get_adapter("postgres").engine_name == "postgres"
        assert get_adapter("redis").engine_name == "redis"
        assert get_adapter("valkey").engine_name == "valkey"

    def test_unknown_engine_is_validation_error(self):
        with pytest.raises(ValidationError, match="Unknown database engine 'mysql'"):
            get_adapter("mysql")

    def test_list_engines(self):
        engines = {engine["engine"]: engine for engine in list_engines()}
        assert set(engines) == {"postgres", "redis", "valkey"}
        assert engines["valkey"]["image"] == "valkey/valkey:8.0-alpine"


class TestPostgresAdapter:
    adapter = get_adapter("postgres")

    @pytest.mark.parametrize("version", ["14", "16", "18"])
    def test_integer_versions_are_valid(self, version):
        assert self.adapter.validate_version(version) == version

    @pytest.mark.parametrize("version", ["16.2", "latest", "-1", "16a", "16\n", "١٦"])
    def test_other_versions_are_rejected(self, version):
        with pytest.raises(ValidationError):
            self.adapter.validate_version(version)

    def test_default_version(self):
        assert self.adapter.validate_version(None) == "16"

    def test_mount_path_changes_from_18(self):
        assert self.adapter.get_mount_path("16") == "/var/lib/postgresql/data"
        assert self.adapter.get_mount_path("17") == "/var/lib/postgresql/data"
        assert self.adapter.get_mount_path("18") == "/var/lib/postgresql"

    def test_container_spec(self):
        spec = self.adapter.build_container_spec(
            container_name="datafork-postgres-app-1234abcd",
            version="16",
            username="postgres",
            password="s3cretpass",
            host_port=5433,
            data_dir=Path("/data/abc"),
            cpu_limit=1.5,
            memory_limit_mb=512,
        )
        assert spec.image == "postgres:16-alpine"
        assert spec.internal_port == 5432
        assert spec.mount_path == "/var/lib/postgresql/data"
        assert spec.env_vars["POSTGRES_PASSWORD"] == "s3cretpass"
        assert spec.env_vars["POSTGRES_DB"] == "postgres"
        assert "shared_preload_libraries=pg_stat_statements" in spec.command
        assert spec.bind_address == "127.0.0.1"

    def test_cli_session_keeps_password_out_of_argv(self):
        session = self.adapter.get_cli_session("postgres", "s3cretpass")
        assert session.argv == ["psql", "-U", "postgres", "-d", "postgres"]
        assert session.env == {"PGPASSWORD": "s3cretpass"}

    def test_connection_string(self):
        assert (
            self.adapter.get_connection_string("localhost", 5433, "postgres", "pw")
            == "postgresql://postgres:pw@localhost:5433/postgres"
        )


class TestPostgresFork:
    adapter = get_adapter("postgres")

    async def test_pipeline_runs_in_target_with_env_credentials(self):
        gateway = MagicMock(spec=ContainerOrchestrator)
        gateway.exec = AsyncMock(return_value=ExecResult(stdout="", stderr="", exit_code=0))

        await self.adapter.fork_data(gateway, SOURCE, TARGET, timeout=30.0)

        args, kwargs = gateway.exec.call_args
        assert args[0] == TARGET.container_ref
        argv = args[1]
        assert argv[:2] == ["sh", "-c"]
        assert "pg_dump" in argv[2] and "pg_restore" in argv[2]
        assert "--clean --if-exists --no-owner --no-privileges" in argv[2]
        # passwords only travel through the exec environment
        assert "sourcepass" not in argv[2]
        assert kwargs["env"]["SOURCE_PGPASSWORD"] == "sourcepass"
        assert kwargs["env"]["TARGET_PGPASSWORD"] == "targetpass"
        assert kwargs["env"]["SOURCE_HOST"] == SOURCE.host
        assert kwargs["timeout"] == 30.0

    async def test_failed_leg_raises_runtime_error(self):
        gateway = MagicMock(spec=ContainerOrchestrator)
        gateway.exec = AsyncMock(return_value=ExecResult(
            stdout="", stderr="pg_dump exit=1 pg_restore exit=0", exit_code=1,
        ))

        with pytest.raises(ContainerRuntimeError, match="pg_dump exit=1"):
            await self.adapter.fork_data(gateway, SOURCE, TARGET, timeout=30.0)


class TestPostgresConfig:
    adapter = get_adapter("postgres")

    async def test_read_config(self):
        gateway = MagicMock(spec=ContainerOrchestrator)
        gateway.exec = AsyncMock(side_effect=[
            ExecResult(stdout="/var/lib/postgresql/data/postgresql.conf\n", stderr="", exit_code=0),
            ExecResult(stdout="max_connections = 100\n", stderr="", exit_code=0),
        ])

        snapshot = await self.adapter.read_config(gateway, TARGET)

        assert snapshot.source == "file"
        assert snapshot.content == "max_connections = 100\n"
        assert gateway.exec.call_args_list[1].args[1] == ["cat", "/var/lib/postgresql/data/postgresql.conf"]

    async def test_empty_file(self):
        gateway = MagicMock(spec=ContainerOrchestrator)
        gateway.exec = AsyncMock(side_effect=[
            ExecResult(stdout="/etc/postgresql.conf", stderr="", exit_code=0),
            ExecResult(stdout="", stderr="", exit_code=0),
        ])
        snapshot = await self.adapter.read_config(gateway, TARGET)
        assert snapshot.source == "empty"

    async def test_apply_config_reports_restart_pending(self):
        gateway = MagicMock(spec=ContainerOrchestrator)
        gateway.exec = AsyncMock(side_effect=[
            ExecResult(stdout="/var/lib/postgresql/data/postgresql.conf", stderr="", exit_code=0),
            ExecResult(stdout="", stderr="", exit_code=0),
            ExecResult(stdout="t", stderr="", exit_code=0),
            ExecResult(stdout="shared_buffers|setting could not be applied\n", stderr="", exit_code=0),
        ])

        result = await self.adapter.apply_config(gateway, TARGET, "shared_buffers = 256MB\n")

        assert result.applied is True
        assert result.requires_restart is True
        assert result.warnings == ["'shared_buffers' takes effect after a restart"]
        write_call = gateway.exec.call_args_list[1]
        assert write_call.kwargs["env"]["CONFIG_CONTENT"] == "shared_buffers = 256MB\n"
        reload_call = gateway.exec.call_args_list[2]
        assert "SELECT pg_reload_conf()" in reload_call.args[1]

    async def test_apply_config_write_failure(self):
        gateway = MagicMock(spec=ContainerOrchestrator)
        gateway.exec = AsyncMock(side_effect=[
            ExecResult(stdout="/etc/postgresql.conf", stderr="", exit_code=0),
            ExecResult(stdout="", stderr="Permission denied", exit_code=1),
        ])
        with pytest.raises(ContainerRuntimeError, match="Permission denied"):
            await self.adapter.apply_config(gateway, TARGET, "work_mem = 8MB")


class TestRedisAdapters:
    @pytest.mark.parametrize("engine", ["redis", "valkey"])
    @pytest.mark.parametrize("version", ["7.2", "8.0", "10.12"])
    def test_major_minor_versions_are_valid(self, engine, version):
        assert get_adapter(engine).validate_version(version) == version

    @pytest.mark.parametrize("engine", ["redis", "valkey"])
    @pytest.mark.parametrize("version", ["7", "7.2.4", "7.x", "latest", "7.2\n"])
    def test_other_versions_are_rejected(self, engine, version):
        with pytest.raises(ValidationError):
            get_adapter(engine).validate_version(version)

    def test_redis_bootstrap(self):
        adapter = get_adapter("redis")
        assert adapter.get_image("7.4") == "redis:7.4-alpine"
        assert adapter.get_mount_path("7.4") == "/data"
        assert adapter.get_command("pw") == ["redis-server", "--requirepass", "pw", "--appendonly", "yes"]
        assert adapter.get_cli_session("default", "pw").argv[0] == "redis-cli"

    def test_valkey_bootstrap(self):
        adapter = get_adapter("valkey")
        assert adapter.get_image("8.0") == "valkey/valkey:8.0-alpine"
        assert adapter.get_command("pw")[0] == "valkey-server"
        assert adapter.get_cli_session("default", "pw").argv[0] == "valkey-cli"
        assert adapter.default_port == 6379

    def test_parse_config_lines(self):
        content = "# comment\n\nmaxmemory 100mb\nsave 3600 1 300 100\nappendonly yes\n"
        assert parse_config_lines(content) == {
            "maxmemory": "100mb",
            "save": "3600 1 300 100",
            "appendonly": "yes",
        }


def make_redis_client(**overrides):
    client = MagicMock()
    client.config_set = AsyncMock()
    client.config_get = AsyncMock(return_value={})
    client.config_rewrite = AsyncMock()
    client.replicaof = AsyncMock()
    client.info = AsyncMock(return_value={"master_link_status": "up", "master_sync_in_progress": 0})
    client.aclose = AsyncMock()
    for name, value in overrides.items():
        setattr(client, name, value)
    return client


class TestRedisFork:
    adapter = get_adapter("redis")

    async def test_replicates_then_promotes(self):
        client = make_redis_client()
        with patch("datafork.services.adapters.redis.aioredis.Redis", return_value=client) as redis_cls:
            await self.adapter.fork_data(MagicMock(), SOURCE, TARGET, timeout=5.0)

        assert redis_cls.call_args.kwargs["host"] == TARGET.host
        assert redis_cls.call_args.kwargs["password"] == TARGET.password
        client.config_set.assert_any_await("masterauth", SOURCE.password)
        assert client.replicaof.await_args_list[0].args == (SOURCE.host, SOURCE.port)
        assert client.replicaof.await_args_list[-1].args == ("NO", "ONE")
        client.config_set.assert_any_await("masterauth", "")
        client.aclose.assert_awaited_once()

    async def test_waits_for_sync_to_finish(self):
        client = make_redis_client(info=AsyncMock(side_effect=[
            {"master_link_status": "down", "master_sync_in_progress": 1},
            {"master_link_status": "up", "master_sync_in_progress": 1},
            {"master_link_status": "up", "master_sync_in_progress": 0},
        ]))
        with patch("datafork.services.adapters.redis.aioredis.Redis", return_value=client), \
                patch("datafork.services.adapters.redis.REPLICATION_POLL_INTERVAL", 0):
            await self.adapter.fork_data(MagicMock(), SOURCE, TARGET, timeout=5.0)
        assert client.info.await_count == 3

    async def test_sync_timeout_still_promotes(self):
        client = make_redis_client(info=AsyncMock(return_value={"master_link_status": "down"}))
        with patch("datafork.services.adapters.redis.aioredis.Redis", return_value=client), \
                patch("datafork.services.adapters.redis.REPLICATION_POLL_INTERVAL", 0):
            with pytest.raises(ContainerRuntimeError, match="did not complete"):
                await self.adapter.fork_data(MagicMock(), SOURCE, TARGET, timeout=0.0)
        assert client.replicaof.await_args_list[-1].args == ("NO", "ONE")

    async def test_connection_error_becomes_runtime_error(self):
        client = make_redis_client(config_set=AsyncMock(side_effect=RedisConnectionError("refused")))
        with patch("datafork.services.adapters.redis.aioredis.Redis", return_value=client):
            with pytest.raises(ContainerRuntimeError, match="refused"):
                await self.adapter.fork_data(MagicMock(), SOURCE, TARGET, timeout=5.0)
        client.aclose.assert_awaited_once()


class TestRedisConfig:
    adapter = get_adapter("valkey")

    async def test_read_filters_sensitive_keys(self):
        client = make_redis_client(config_get=AsyncMock(return_value={
            "requirepass": "secret", "masterauth": "", "maxmemory": "0", "appendonly": "yes",
        }))
        with patch("datafork.services.adapters.redis.aioredis.Redis", return_value=client):
            snapshot = await self.adapter.read_config(MagicMock(), TARGET)

        assert snapshot.source == "runtime"
        assert snapshot.content == "appendonly yes\nmaxmemory 0"
        assert "secret" not in snapshot.content

    async def test_apply_sets_only_changed_keys(self):
        client = make_redis_client(config_get=AsyncMock(return_value={
            "requirepass": "secret", "maxmemory": "0", "appendonly": "yes",
        }))
        with patch("datafork.services.adapters.redis.aioredis.Redis", return_value=client):
            result = await self.adapter.apply_config(
                MagicMock(), TARGET, "maxmemory 100mb\nappendonly yes\nrequirepass hacked\n"
            )

        client.config_set.assert_awaited_once_with("maxmemory", "100mb")
        client.config_rewrite.assert_awaited_once()
        assert result.applied is True
        assert result.warnings == ["'requirepass' cannot be changed through configuration; ignored"]

    async def test_unknown_key_is_rejected(self):
        client = make_redis_client(config_get=AsyncMock(return_value={"maxmemory": "0"}))
        with patch("datafork.services.adapters.redis.aioredis.Redis", return_value=client):
            with pytest.raises(ValidationError, match="Unknown configuration key 'bogus'"):
                await self.adapter.apply_config(MagicMock(), TARGET, "bogus 1")
        client.config_set.assert_not_awaited()

    async def test_rejected_value_is_validation_error(self):
        client = make_redis_client(
            config_get=AsyncMock(return_value={"maxmemory": "0"}),
            config_set=AsyncMock(side_effect=ResponseError("argument couldn't be parsed")),
        )
        with patch("datafork.services.adapters.redis.aioredis.Redis", return_value=client):
            with pytest.raises(ValidationError, match="Invalid value for 'maxmemory'"):
                await self.adapter.apply_config(MagicMock(), TARGET, "maxmemory lots")

    async def test_rewrite_failure_is_a_warning(self):
        client = make_redis_client(
            config_get=AsyncMock(return_value={"maxmemory": "0"}),
            config_rewrite=AsyncMock(side_effect=ResponseError("The server is running without a config file")),
        )
        with patch("datafork.services.adapters.redis.aioredis.Redis", return_value=client):
            result = await self.adapter.apply_config(MagicMock(), TARGET, "maxmemory 64mb")

        assert result.applied is True
        assert len(result.warnings) == 1
        assert "CONFIG REWRITE failed" in result.warnings[0]
