"""
Valkey Database Adapter

Valkey speaks the Redis protocol, so bootstrap, fork and configuration are
inherited from the Redis adapter; only images and binaries differ.
"""

from .base import CliSession
from .redis import RedisAdapter


class ValkeyAdapter(RedisAdapter):
    """Valkey key-value engine adapter."""

    engine_name = "valkey"
    display_name = "Valkey"
    default_version = "8.0"

    image_repository = "valkey/valkey"
    server_binary = "valkey-server"
    cli_binary = "valkey-cli"

    def get_cli_session(self, username: str, password: str) -> CliSession:
        return CliSession(
            argv=[self.cli_binary, "--no-auth-warning"],
            env={"VALKEYCLI_AUTH": password, "REDISCLI_AUTH": password},
        )
