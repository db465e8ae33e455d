"""
Instance Store for datafork

Raw SQL persistence for database records and port claims. Every write
commits immediately; callers pass the AsyncSession they are working in.
"""

import logging
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import INSTANCES_TABLE, PORT_CLAIMS_TABLE, PROJECTS_TABLE
from ..errors import AlreadyExistsError, ConflictError
from ..models import DatabaseInstance, DatabaseStatus, utc_now

logger = logging.getLogger("uvicorn.error")

PORT_CLAIM_ATTEMPTS = 5

UPDATABLE_COLUMNS = frozenset({
    "name",
    "cpu_limit",
    "memory_limit_mb",
    "storage_limit_mb",
    "public_exposed",
    "encrypted_password",
    "status",
    "forked_at",
})

PROJECTS_SCHEMA = f'''
    CREATE TABLE IF NOT EXISTS "{PROJECTS_TABLE}" (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        created_at TEXT
    )
'''

SCHEMA = [
    f'''
    CREATE TABLE IF NOT EXISTS "{INSTANCES_TABLE}" (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        name TEXT NOT NULL,
        engine_type TEXT NOT NULL,
        engine_version TEXT NOT NULL,
        container_name TEXT NOT NULL UNIQUE,
        container_ref TEXT,
        status TEXT NOT NULL DEFAULT 'creating',
        host TEXT,
        port INTEGER UNIQUE,
        username TEXT NOT NULL,
        encrypted_password TEXT,
        cpu_limit REAL NOT NULL,
        memory_limit_mb INTEGER NOT NULL,
        storage_limit_mb INTEGER NOT NULL,
        public_exposed BOOLEAN NOT NULL DEFAULT FALSE,
        branch_name TEXT NOT NULL DEFAULT 'main',
        is_default_branch BOOLEAN NOT NULL DEFAULT TRUE,
        parent_branch_id TEXT REFERENCES "{INSTANCES_TABLE}"(id) ON DELETE SET NULL,
        forked_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (project_id, name)
    )
    ''',
    f'''
    CREATE INDEX IF NOT EXISTS "idx_{INSTANCES_TABLE}_project"
    ON "{INSTANCES_TABLE}" (project_id)
    ''',
    f'''
    CREATE INDEX IF NOT EXISTS "idx_{INSTANCES_TABLE}_parent"
    ON "{INSTANCES_TABLE}" (parent_branch_id)
    ''',
    f'''
    CREATE TABLE IF NOT EXISTS "{PORT_CLAIMS_TABLE}" (
        port INTEGER PRIMARY KEY,
        database_id TEXT NOT NULL UNIQUE,
        claimed_at TEXT NOT NULL
    )
    ''',
]


class InstanceStore:
    """Static persistence helpers for the instances and port-claims tables."""

    @staticmethod
    async def create_tables(db: AsyncSession, include_projects: bool = False) -> None:
        statements = ([PROJECTS_SCHEMA] if include_projects else []) + SCHEMA
        for statement in statements:
            await db.execute(text(statement))
        await db.commit()

    # ---- Ownership -----------------------------------------------------------

    @staticmethod
    async def is_project_owner(db: AsyncSession, project_id: str, user_id: str) -> bool:
        result = await db.execute(
            text(f'SELECT user_id FROM "{PROJECTS_TABLE}" WHERE id = :project_id'),
            {"project_id": project_id},
        )
        owner = result.scalar_one_or_none()
        return owner is not None and str(owner) == str(user_id)

    # ---- Reads ---------------------------------------------------------------

    @staticmethod
    async def get(db: AsyncSession, database_id: str) -> Optional[DatabaseInstance]:
        result = await db.execute(
            text(f'SELECT * FROM "{INSTANCES_TABLE}" WHERE id = :id'),
            {"id": database_id},
        )
        row = result.mappings().first()
        return DatabaseInstance.from_row(row) if row else None

    @staticmethod
    async def get_by_name(db: AsyncSession, project_id: str, name: str) -> Optional[DatabaseInstance]:
        result = await db.execute(
            text(f'SELECT * FROM "{INSTANCES_TABLE}" WHERE project_id = :project_id AND name = :name'),
            {"project_id": project_id, "name": name},
        )
        row = result.mappings().first()
        return DatabaseInstance.from_row(row) if row else None

    @staticmethod
    async def list_by_project(db: AsyncSession, project_id: str) -> list[DatabaseInstance]:
        result = await db.execute(
            text(f'''
                SELECT * FROM "{INSTANCES_TABLE}"
                WHERE project_id = :project_id
                ORDER BY created_at
            '''),
            {"project_id": project_id},
        )
        return [DatabaseInstance.from_row(row) for row in result.mappings().all()]

    @staticmethod
    async def list_children(db: AsyncSession, parent_id: str) -> list[DatabaseInstance]:
        result = await db.execute(
            text(f'''
                SELECT * FROM "{INSTANCES_TABLE}"
                WHERE parent_branch_id = :parent_id
                ORDER BY created_at
            '''),
            {"parent_id": parent_id},
        )
        return [DatabaseInstance.from_row(row) for row in result.mappings().all()]

    # ---- Writes --------------------------------------------------------------

    @staticmethod
    async def insert(db: AsyncSession, record: DatabaseInstance) -> DatabaseInstance:
        """
        Persist a new record.

        Raises:
            AlreadyExistsError: If the project already has a database with this name.
        """
        try:
            await db.execute(
                text(f'''
                    INSERT INTO "{INSTANCES_TABLE}" (
                        id, project_id, name, engine_type, engine_version,
                        container_name, status, username, cpu_limit,
                        memory_limit_mb, storage_limit_mb, public_exposed,
                        branch_name, is_default_branch, parent_branch_id,
                        forked_at, created_at, updated_at
                    ) VALUES (
                        :id, :project_id, :name, :engine_type, :engine_version,
                        :container_name, :status, :username, :cpu_limit,
                        :memory_limit_mb, :storage_limit_mb, :public_exposed,
                        :branch_name, :is_default_branch, :parent_branch_id,
                        :forked_at, :created_at, :updated_at
                    )
                '''),
                {
                    "id": record.id,
                    "project_id": record.project_id,
                    "name": record.name,
                    "engine_type": record.engine_type,
                    "engine_version": record.engine_version,
                    "container_name": record.container_name,
                    "status": record.status.value,
                    "username": record.username,
                    "cpu_limit": record.cpu_limit,
                    "memory_limit_mb": record.memory_limit_mb,
                    "storage_limit_mb": record.storage_limit_mb,
                    "public_exposed": record.public_exposed,
                    "branch_name": record.branch_name,
                    "is_default_branch": record.is_default_branch,
                    "parent_branch_id": record.parent_branch_id,
                    "forked_at": record.forked_at,
                    "created_at": record.created_at,
                    "updated_at": record.updated_at,
                },
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise AlreadyExistsError(f"Database '{record.name}' already exists in this project")
        return record

    @staticmethod
    async def claim_port(db: AsyncSession, database_id: str, base_port: int) -> int:
        """
        Claim the next free port (highest claimed + 1) for ``database_id``.

        The claim is a single INSERT ... SELECT against a primary key on port,
        so two concurrent claims cannot both win the same port; the loser
        rolls back and tries again.
        """
        existing = await db.execute(
            text(f'SELECT port FROM "{PORT_CLAIMS_TABLE}" WHERE database_id = :database_id'),
            {"database_id": database_id},
        )
        port = existing.scalar_one_or_none()
        if port is not None:
            return port

        for attempt in range(1, PORT_CLAIM_ATTEMPTS + 1):
            try:
                await db.execute(
                    text(f'''
                        INSERT INTO "{PORT_CLAIMS_TABLE}" (port, database_id, claimed_at)
                        SELECT COALESCE(MAX(port), :base_port) + 1, :database_id, :claimed_at
                        FROM "{PORT_CLAIMS_TABLE}"
                    '''),
                    {"base_port": base_port, "database_id": database_id, "claimed_at": utc_now()},
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.warning(f"Port claim collision for {database_id} (attempt {attempt})")
                continue

            result = await db.execute(
                text(f'SELECT port FROM "{PORT_CLAIMS_TABLE}" WHERE database_id = :database_id'),
                {"database_id": database_id},
            )
            return result.scalar_one()

        raise ConflictError(f"Could not allocate a port after {PORT_CLAIM_ATTEMPTS} attempts")

    @staticmethod
    async def mark_provisioned(
        db: AsyncSession,
        database_id: str,
        container_ref: str,
        host: str,
        port: int,
        encrypted_password: str,
        status: DatabaseStatus,
    ) -> None:
        """Set the container fields together, in one statement."""
        await db.execute(
            text(f'''
                UPDATE "{INSTANCES_TABLE}"
                SET container_ref = :container_ref,
                    host = :host,
                    port = :port,
                    encrypted_password = :encrypted_password,
                    status = :status,
                    updated_at = :updated_at
                WHERE id = :id
            '''),
            {
                "id": database_id,
                "container_ref": container_ref,
                "host": host,
                "port": port,
                "encrypted_password": encrypted_password,
                "status": status.value,
                "updated_at": utc_now(),
            },
        )
        await db.commit()

    @staticmethod
    async def update_fields(db: AsyncSession, database_id: str, fields: dict[str, Any]) -> None:
        if not fields:
            return
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Columns not updatable: {', '.join(sorted(unknown))}")

        params = {
            key: value.value if isinstance(value, DatabaseStatus) else value
            for key, value in fields.items()
        }
        assignments = ", ".join(f"{column} = :{column}" for column in params)
        params.update({"id": database_id, "updated_at": utc_now()})
        try:
            await db.execute(
                text(f'''
                    UPDATE "{INSTANCES_TABLE}"
                    SET {assignments}, updated_at = :updated_at
                    WHERE id = :id
                '''),
                params,
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise AlreadyExistsError(f"Database '{fields.get('name')}' already exists in this project")

    @staticmethod
    async def update_status(db: AsyncSession, database_id: str, status: DatabaseStatus) -> None:
        await InstanceStore.update_fields(db, database_id, {"status": status})

    @staticmethod
    async def delete(db: AsyncSession, database_id: str) -> None:
        """
        Hard-delete a record together with its port claim.

        Direct branches of the record are detached in the same commit and
        become roots of their own lineage.
        """
        await db.execute(
            text(f'''
                UPDATE "{INSTANCES_TABLE}"
                SET parent_branch_id = NULL,
                    is_default_branch = TRUE,
                    updated_at = :updated_at
                WHERE parent_branch_id = :id
            '''),
            {"id": database_id, "updated_at": utc_now()},
        )
        await db.execute(
            text(f'DELETE FROM "{PORT_CLAIMS_TABLE}" WHERE database_id = :id'),
            {"id": database_id},
        )
        await db.execute(
            text(f'DELETE FROM "{INSTANCES_TABLE}" WHERE id = :id'),
            {"id": database_id},
        )
        await db.commit()
