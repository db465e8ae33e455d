"""
Database record model.

A DatabaseInstance is one row of the instances table: a root database or one
of its branches. Rows come back from the store as mappings and are turned into
instances with ``DatabaseInstance.from_row``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

PASSWORD_MASK = "********"


class DatabaseStatus(str, Enum):
    """Lifecycle states of a database record."""
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    UNHEALTHY = "unhealthy"
    DELETED = "deleted"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class DatabaseInstance:
    id: str
    project_id: str
    name: str
    engine_type: str
    engine_version: str
    container_name: str
    status: DatabaseStatus
    username: str
    cpu_limit: float
    memory_limit_mb: int
    storage_limit_mb: int
    public_exposed: bool = False
    branch_name: str = "main"
    is_default_branch: bool = True
    parent_branch_id: Optional[str] = None
    forked_at: Optional[str] = None
    container_ref: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    encrypted_password: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    # Plaintext password, only attached for the owner right after creation
    # or on an explicit reveal. Never persisted.
    password: Optional[str] = field(default=None, repr=False, compare=False)

    @classmethod
    def from_row(cls, row: Any) -> "DatabaseInstance":
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            name=row["name"],
            engine_type=row["engine_type"],
            engine_version=row["engine_version"],
            container_name=row["container_name"],
            status=DatabaseStatus(row["status"]),
            username=row["username"],
            cpu_limit=float(row["cpu_limit"]),
            memory_limit_mb=int(row["memory_limit_mb"]),
            storage_limit_mb=int(row["storage_limit_mb"]),
            public_exposed=bool(row["public_exposed"]),
            branch_name=row["branch_name"],
            is_default_branch=bool(row["is_default_branch"]),
            parent_branch_id=row["parent_branch_id"],
            forked_at=row["forked_at"],
            container_ref=row["container_ref"],
            host=row["host"],
            port=row["port"],
            encrypted_password=row["encrypted_password"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def is_running(self) -> bool:
        return self.status == DatabaseStatus.RUNNING

    @property
    def is_provisioned(self) -> bool:
        return self.container_ref is not None

    def connection_endpoint(self, internal_port: int) -> tuple[str, int]:
        """Host/port a client should use to reach this database."""
        if self.public_exposed and self.host and self.port:
            return self.host, self.port
        return self.container_name, internal_port

    def to_public_dict(self, connection_string: Optional[str] = None) -> dict:
        """Public-safe projection; the password stays masked unless attached."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "engine_type": self.engine_type,
            "engine_version": self.engine_version,
            "status": self.status.value,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "password": self.password if self.password is not None else PASSWORD_MASK,
            "connection_string": connection_string,
            "cpu_limit": self.cpu_limit,
            "memory_limit_mb": self.memory_limit_mb,
            "storage_limit_mb": self.storage_limit_mb,
            "public_exposed": self.public_exposed,
            "branch_name": self.branch_name,
            "is_default_branch": self.is_default_branch,
            "parent_branch_id": self.parent_branch_id,
            "forked_at": self.forked_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
