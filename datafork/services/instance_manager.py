import logging
import re
import secrets
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .. import CONTAINER_PREFIX
from ..config import Settings
from ..errors import (
    AlreadyExistsError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from ..models import PASSWORD_MASK, DatabaseInstance, DatabaseStatus
from .adapters import BaseAdapter, InstanceEndpoint, get_adapter
from .container_orchestrator import ContainerOrchestrator, ContainerStats, LogsResult
from .credential_manager import CredentialManager
from .instance_store import InstanceStore
from .volume_service import VolumeService

logger = logging.getLogger("uvicorn.error")

NAME_PATTERN = re.compile(r"[A-Za-z0-9_-]+")
MAX_NAME_LENGTH = 63

MIN_CPU_LIMIT = 0.5
MIN_MEMORY_LIMIT_MB = 256
MIN_STORAGE_LIMIT_MB = 512
MIN_PASSWORD_LENGTH = 8


def validate_name(name: Optional[str], label: str = "Database name") -> str:
    """Names are 1-63 characters of letters, digits, '_' and '-'."""
    if not name:
        raise ValidationError(f"{label} cannot be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"{label} must be at most {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.fullmatch(name):
        raise ValidationError(f"{label} may only contain letters, digits, '_' and '-'")
    return name


def validate_resources(
    cpu_limit: Optional[float] = None,
    memory_limit_mb: Optional[int] = None,
    storage_limit_mb: Optional[int] = None,
) -> None:
    if cpu_limit is not None and cpu_limit < MIN_CPU_LIMIT:
        raise ValidationError(f"CPU limit must be at least {MIN_CPU_LIMIT} cores")
    if memory_limit_mb is not None and memory_limit_mb < MIN_MEMORY_LIMIT_MB:
        raise ValidationError(f"Memory limit must be at least {MIN_MEMORY_LIMIT_MB} MB")
    if storage_limit_mb is not None and storage_limit_mb < MIN_STORAGE_LIMIT_MB:
        raise ValidationError(f"Storage limit must be at least {MIN_STORAGE_LIMIT_MB} MB")


def validate_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


class InstanceManager:
    """Lifecycle manager for database instances and their branches.

    Every public operation takes the caller's AsyncSession first and the
    caller's user id, and checks project ownership before any side effect.
    """

    def __init__(
        self,
        settings: Settings,
        gateway: ContainerOrchestrator,
        credentials: CredentialManager,
        volumes: VolumeService,
        store: type[InstanceStore] = InstanceStore,
    ):
        self.settings = settings
        self.gateway = gateway
        self.credentials = credentials
        self.volumes = volumes
        self.store = store

    @classmethod
    def from_settings(cls, settings: Settings) -> "InstanceManager":
        return cls(
            settings=settings,
            gateway=ContainerOrchestrator.from_settings(settings),
            credentials=CredentialManager(settings.encryption_key),
            volumes=VolumeService(settings.data_dir),
        )

    @staticmethod
    def generate_container_name(engine_type: str, name: str, database_id: str) -> str:
        """Generate a unique container name, also used as the in-network host name."""
        safe_name = "".join(c if c.isalnum() or c in "-_" else "-" for c in name).lower()
        return f"{CONTAINER_PREFIX}-{engine_type}-{safe_name}-{database_id[:8]}"

    # ---- Lookup & Access -----------------------------------------------------

    async def check_access(self, db: AsyncSession, database_id: str, user_id: str) -> bool:
        """True when ``user_id`` owns the project the database belongs to."""
        record = await self.store.get(db, database_id)
        if record is None:
            return False
        return await self.store.is_project_owner(db, record.project_id, user_id)

    async def load_owned(self, db: AsyncSession, database_id: str, user_id: str) -> DatabaseInstance:
        record = await self.store.get(db, database_id)
        if record is None:
            raise NotFoundError(f"Database {database_id} not found")
        if not await self.store.is_project_owner(db, record.project_id, user_id):
            raise ForbiddenError("You do not have access to this database")
        return record

    async def find_root(self, db: AsyncSession, record: DatabaseInstance) -> DatabaseInstance:
        """Walk parent_branch_id up to the lineage root."""
        current = record
        seen = {record.id}
        while current.parent_branch_id:
            parent = await self.store.get(db, current.parent_branch_id)
            if parent is None:
                raise NotFoundError(f"Parent database {current.parent_branch_id} not found")
            if parent.id in seen:
                logger.error(f"Branch lineage of {record.id} contains a cycle at {parent.id}")
                raise InternalError("Branch lineage contains a cycle")
            seen.add(parent.id)
            current = parent
        return current

    async def collect_lineage(self, db: AsyncSession, root: DatabaseInstance) -> list[DatabaseInstance]:
        """Return the root and every descendant, breadth first."""
        lineage = [root]
        pending = [root.id]
        while pending:
            children = await self.store.list_children(db, pending.pop(0))
            lineage.extend(children)
            pending.extend(child.id for child in children)
        return lineage

    def get_endpoint(self, record: DatabaseInstance) -> InstanceEndpoint:
        """Network endpoint and decrypted credentials of a provisioned database."""
        if not record.container_ref or not record.encrypted_password:
            logger.error(f"Database {record.id} has no container or stored password")
            raise InternalError(f"Database {record.id} is not provisioned")
        adapter = get_adapter(record.engine_type)
        return InstanceEndpoint(
            container_ref=record.container_ref,
            host=record.container_name,
            port=adapter.default_port,
            username=record.username,
            password=self.credentials.decrypt(record.encrypted_password),
        )

    def to_response(self, record: DatabaseInstance) -> dict:
        """Public-safe projection with a connection string."""
        connection_string = None
        if record.is_provisioned:
            adapter = get_adapter(record.engine_type)
            host, port = record.connection_endpoint(adapter.default_port)
            password = record.password if record.password is not None else PASSWORD_MASK
            connection_string = adapter.get_connection_string(host, port, record.username, password)
        return record.to_public_dict(connection_string)

    # ---- Provisioning --------------------------------------------------------

    async def create(
        self,
        db: AsyncSession,
        user_id: str,
        project_id: str,
        name: str,
        engine_type: str,
        version: Optional[str] = None,
        password: Optional[str] = None,
        cpu_limit: float = 1.0,
        memory_limit_mb: int = 512,
        storage_limit_mb: int = 1024,
        public_exposed: bool = False,
    ) -> DatabaseInstance:
        """
        Create a root database and provision its container.

        The returned instance carries the plaintext password; it is the only
        response that does so without an explicit reveal.
        """
        if not await self.store.is_project_owner(db, project_id, user_id):
            raise ForbiddenError("You do not have access to this project")

        validate_name(name)
        adapter = get_adapter(engine_type)
        version = adapter.validate_version(version)
        validate_resources(cpu_limit, memory_limit_mb, storage_limit_mb)
        if password is not None:
            validate_password(password)

        if await self.store.get_by_name(db, project_id, name) is not None:
            raise AlreadyExistsError(f"Database '{name}' already exists in this project")

        database_id = str(uuid.uuid4())
        record = DatabaseInstance(
            id=database_id,
            project_id=project_id,
            name=name,
            engine_type=engine_type,
            engine_version=version,
            container_name=self.generate_container_name(engine_type, name, database_id),
            status=DatabaseStatus.CREATING,
            username=adapter.default_username,
            cpu_limit=float(cpu_limit),
            memory_limit_mb=int(memory_limit_mb),
            storage_limit_mb=int(storage_limit_mb),
            public_exposed=public_exposed,
        )
        await self.store.insert(db, record)
        logger.info(f"Creating {engine_type} {version} database '{name}' ({database_id})")

        return await self.provision(db, record, password or CredentialManager.generate_password())

    async def _mark_unhealthy(self, db: AsyncSession, record: DatabaseInstance) -> None:
        # a failed statement leaves the session unusable until rolled back
        await db.rollback()
        await self.store.update_status(db, record.id, DatabaseStatus.UNHEALTHY)
        record.status = DatabaseStatus.UNHEALTHY

    async def provision(
        self, db: AsyncSession, record: DatabaseInstance, password: str
    ) -> DatabaseInstance:
        """
        Bring up the container for a freshly inserted ``creating`` record.

        Steps: port claim, data directory, pull, create, start, health wait.
        Nothing is rolled back on failure: a failure before the container
        exists leaves the record ``unhealthy``; a failure after it exists
        also persists the container fields so the caller can delete it.
        """
        adapter = get_adapter(record.engine_type)
        host = self.settings.public_host

        try:
            port = await self.store.claim_port(db, record.id, self.settings.port_base)
            data_dir = self.volumes.create_volume(record.id)
            spec = adapter.build_container_spec(
                container_name=record.container_name,
                version=record.engine_version,
                username=record.username,
                password=password,
                host_port=port,
                data_dir=data_dir,
                cpu_limit=record.cpu_limit,
                memory_limit_mb=record.memory_limit_mb,
                public_exposed=record.public_exposed,
                labels={"datafork.database_id": record.id, "datafork.project_id": record.project_id},
            )
            await self.gateway.pull(spec.image)
            container_ref = await self.gateway.create(spec)
        except Exception as e:
            logger.error(f"Provisioning database {record.id} failed before container creation: {e}")
            await self._mark_unhealthy(db, record)
            raise

        encrypted_password = self.credentials.encrypt(password)
        try:
            await self.gateway.start(container_ref)
            healthy = await self.gateway.wait_healthy(
                container_ref,
                timeout=self.settings.health_timeout,
                interval=self.settings.health_interval,
            )
        except Exception as e:
            logger.error(f"Starting container {container_ref} for database {record.id} failed: {e}")
            await db.rollback()
            await self.store.mark_provisioned(
                db, record.id, container_ref, host, port, encrypted_password, DatabaseStatus.UNHEALTHY
            )
            raise

        status = DatabaseStatus.RUNNING if healthy else DatabaseStatus.UNHEALTHY
        try:
            await self.store.mark_provisioned(db, record.id, container_ref, host, port, encrypted_password, status)
        except Exception as e:
            logger.error(f"Recording container {container_ref} for database {record.id} failed: {e}")
            await self._mark_unhealthy(db, record)
            raise
        if healthy:
            logger.info(f"Database {record.id} is running on port {port}")
        else:
            logger.warning(f"Database {record.id} did not become healthy; marked unhealthy")

        record.container_ref = container_ref
        record.host = host
        record.port = port
        record.encrypted_password = encrypted_password
        record.status = status
        record.password = password
        return record

    # ---- Reads ---------------------------------------------------------------

    async def get(
        self, db: AsyncSession, database_id: str, user_id: str, reveal_password: bool = False
    ) -> DatabaseInstance:
        record = await self.load_owned(db, database_id, user_id)
        if reveal_password and record.encrypted_password:
            record.password = self.credentials.decrypt(record.encrypted_password)
        return record

    async def list_by_project(self, db: AsyncSession, project_id: str, user_id: str) -> list[DatabaseInstance]:
        if not await self.store.is_project_owner(db, project_id, user_id):
            raise ForbiddenError("You do not have access to this project")
        return await self.store.list_by_project(db, project_id)

    async def list_branches(self, db: AsyncSession, database_id: str, user_id: str) -> list[DatabaseInstance]:
        """All records sharing this database's root, default branch first."""
        record = await self.load_owned(db, database_id, user_id)
        root = await self.find_root(db, record)
        lineage = await self.collect_lineage(db, root)
        return sorted(lineage, key=lambda r: (not r.is_default_branch, r.created_at))

    async def get_connection_info(self, db: AsyncSession, database_id: str, user_id: str) -> dict:
        record = await self.get(db, database_id, user_id, reveal_password=True)
        if not record.is_provisioned:
            raise ValidationError("Database has not been provisioned yet")
        adapter = get_adapter(record.engine_type)
        host, port = record.connection_endpoint(adapter.default_port)
        return {
            "host": host,
            "port": port,
            "username": record.username,
            "password": record.password,
            "connection_string": adapter.get_connection_string(host, port, record.username, record.password),
        }

    # ---- Mutations -----------------------------------------------------------

    async def update(
        self,
        db: AsyncSession,
        database_id: str,
        user_id: str,
        name: Optional[str] = None,
        cpu_limit: Optional[float] = None,
        memory_limit_mb: Optional[int] = None,
        storage_limit_mb: Optional[int] = None,
        public_exposed: Optional[bool] = None,
    ) -> DatabaseInstance:
        """Change name, resources or exposure. Only allowed while not running."""
        record = await self.load_owned(db, database_id, user_id)

        requested = {
            "name": name,
            "cpu_limit": cpu_limit,
            "memory_limit_mb": memory_limit_mb,
            "storage_limit_mb": storage_limit_mb,
            "public_exposed": public_exposed,
        }
        changes = {key: value for key, value in requested.items() if value is not None}
        if not changes:
            return record
        if record.is_running:
            raise ValidationError("Stop the database before changing its name, resources or exposure")

        validate_resources(cpu_limit, memory_limit_mb, storage_limit_mb)
        if name is not None and name != record.name:
            validate_name(name)
            if await self.store.get_by_name(db, record.project_id, name) is not None:
                raise AlreadyExistsError(f"Database '{name}' already exists in this project")

        await self.store.update_fields(db, database_id, changes)
        logger.info(f"Updated database {database_id}: {', '.join(sorted(changes))}")
        return await self.store.get(db, database_id)

    async def change_password(
        self,
        db: AsyncSession,
        database_id: str,
        user_id: str,
        current_password: str,
        new_password: str,
    ) -> None:
        """
        Replace the stored password after verifying the current one.

        The credential inside the container is not rotated.
        """
        record = await self.load_owned(db, database_id, user_id)
        if record.is_running:
            raise ValidationError("Stop the database before changing its password")
        if not record.encrypted_password:
            raise InternalError(f"Database {database_id} has no stored password")

        stored = self.credentials.decrypt(record.encrypted_password)
        if not secrets.compare_digest(stored.encode(), current_password.encode()):
            raise ValidationError("Current password is incorrect")
        validate_password(new_password)

        await self.store.update_fields(
            db, database_id, {"encrypted_password": self.credentials.encrypt(new_password)}
        )
        logger.info(f"Stored password changed for database {database_id}")

    async def start(self, db: AsyncSession, database_id: str, user_id: str) -> DatabaseInstance:
        record = await self.load_owned(db, database_id, user_id)
        if not record.container_ref:
            raise InternalError(f"Database {database_id} has no container")
        await self.gateway.start(record.container_ref)
        await self.store.update_status(db, database_id, DatabaseStatus.RUNNING)
        record.status = DatabaseStatus.RUNNING
        return record

    async def stop(self, db: AsyncSession, database_id: str, user_id: str) -> DatabaseInstance:
        record = await self.load_owned(db, database_id, user_id)
        if not record.container_ref:
            raise InternalError(f"Database {database_id} has no container")
        await self.gateway.stop(record.container_ref)
        await self.store.update_status(db, database_id, DatabaseStatus.STOPPED)
        record.status = DatabaseStatus.STOPPED
        return record

    async def delete(self, db: AsyncSession, database_id: str, user_id: str) -> None:
        """
        Delete a database: container, data directory, then the record.

        Container and filesystem cleanup is best-effort; only the final
        record deletion can fail the operation. Branches of the database
        survive and become roots.
        """
        record = await self.load_owned(db, database_id, user_id)
        children = await self.store.list_children(db, database_id)

        if record.container_ref:
            try:
                await self.gateway.stop(record.container_ref)
            except Exception as e:
                logger.warning(f"Failed to stop container {record.container_ref}: {e}")
            try:
                await self.gateway.remove(record.container_ref, force=True)
            except Exception as e:
                logger.warning(f"Failed to remove container {record.container_ref}: {e}")

        try:
            self.volumes.remove_volume(record.id)
        except Exception as e:
            logger.warning(f"Failed to remove data directory of database {record.id}: {e}")

        await self.store.delete(db, database_id)
        if children:
            logger.info(f"Detached {len(children)} branch(es) of database {database_id}")
        logger.info(f"Deleted database {database_id} ({record.name})")

    # ---- Runtime Views -------------------------------------------------------

    async def _load_running(self, db: AsyncSession, database_id: str, user_id: str) -> DatabaseInstance:
        record = await self.load_owned(db, database_id, user_id)
        if not record.is_running or not record.container_ref:
            raise ValidationError("Database is not running")
        return record

    async def get_logs(
        self,
        db: AsyncSession,
        database_id: str,
        user_id: str,
        tail: int = 100,
        since: Optional[str] = None,
    ) -> LogsResult:
        record = await self.load_owned(db, database_id, user_id)
        if not record.container_ref:
            raise ValidationError("Database has no container yet")
        return await self.gateway.logs(record.container_ref, tail=tail, since=since)

    async def get_stats(self, db: AsyncSession, database_id: str, user_id: str) -> ContainerStats:
        record = await self._load_running(db, database_id, user_id)
        return await self.gateway.stats(record.container_ref)

    async def get_terminal_session(self, db: AsyncSession, database_id: str, user_id: str) -> dict:
        """Container and CLI invocation for an interactive exec session."""
        record = await self._load_running(db, database_id, user_id)
        endpoint = self.get_endpoint(record)
        adapter: BaseAdapter = get_adapter(record.engine_type)
        session = adapter.get_cli_session(endpoint.username, endpoint.password)
        return {"container_ref": record.container_ref, "argv": session.argv, "env": session.env}
