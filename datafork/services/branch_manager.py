"""
Branch Manager for datafork

Creates branches (independent containers whose record points at a parent)
and copies live data from the parent into them, either once at creation
time or again on demand with sync_from_parent.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AlreadyExistsError, DatabaseServiceError, NotFoundError, ValidationError
from ..models import DatabaseInstance, DatabaseStatus, utc_now
from .adapters import get_adapter
from .credential_manager import CredentialManager
from .instance_manager import InstanceManager, validate_name

logger = logging.getLogger("uvicorn.error")


@dataclass
class BranchResult:
    instance: DatabaseInstance
    warnings: list[str] = field(default_factory=list)


class BranchManager:
    """Branch creation and parent-to-branch data sync."""

    def __init__(self, instances: InstanceManager):
        self.instances = instances
        self.settings = instances.settings
        self.store = instances.store

    async def _fork(self, source: DatabaseInstance, target: DatabaseInstance) -> None:
        adapter = get_adapter(target.engine_type)
        await adapter.fork_data(
            self.instances.gateway,
            self.instances.get_endpoint(source),
            self.instances.get_endpoint(target),
            timeout=self.settings.fork_timeout,
        )

    async def create_branch(
        self,
        db: AsyncSession,
        source_id: str,
        user_id: str,
        branch_name: str,
        include_data: bool = False,
    ) -> BranchResult:
        """
        Branch ``source_id`` into a new database named ``{root}-{branch_name}``.

        With ``include_data`` the source's current data is copied into the new
        branch when both are running. A failed copy does not fail the branch;
        it is reported in ``warnings`` instead.
        """
        source = await self.instances.load_owned(db, source_id, user_id)
        validate_name(branch_name, "Branch name")

        root = await self.instances.find_root(db, source)
        composite_name = validate_name(f"{root.name}-{branch_name}", "Branch database name")

        lineage = await self.instances.collect_lineage(db, root)
        if any(record.branch_name == branch_name for record in lineage):
            raise AlreadyExistsError(f"Branch '{branch_name}' already exists")
        if await self.store.get_by_name(db, source.project_id, composite_name) is not None:
            raise AlreadyExistsError(f"Database '{composite_name}' already exists in this project")

        adapter = get_adapter(source.engine_type)
        branch_id = str(uuid.uuid4())
        branch = DatabaseInstance(
            id=branch_id,
            project_id=source.project_id,
            name=composite_name,
            engine_type=source.engine_type,
            engine_version=source.engine_version,
            container_name=self.instances.generate_container_name(
                source.engine_type, composite_name, branch_id
            ),
            status=DatabaseStatus.CREATING,
            username=adapter.default_username,
            cpu_limit=source.cpu_limit,
            memory_limit_mb=source.memory_limit_mb,
            storage_limit_mb=source.storage_limit_mb,
            public_exposed=False,
            branch_name=branch_name,
            is_default_branch=False,
            parent_branch_id=source.id,
            forked_at=utc_now(),
        )
        await self.store.insert(db, branch)
        logger.info(f"Creating branch '{branch_name}' of database {source.id} as {branch_id}")

        branch = await self.instances.provision(db, branch, CredentialManager.generate_password())

        warnings = []
        if include_data:
            if not source.is_running:
                warnings.append("Source database is not running; branch was created without data")
            elif not branch.is_running:
                warnings.append("Branch did not become healthy; data was not copied")
            else:
                # lets the runtime's DNS pick up the new container before connecting
                await asyncio.sleep(self.settings.fork_settle_delay)
                try:
                    await self._fork(source, branch)
                except DatabaseServiceError as e:
                    logger.warning(f"Copying data into branch {branch.id} failed: {e}")
                    warnings.append(f"Branch was created without data: {e.detail['message']}")

        return BranchResult(instance=branch, warnings=warnings)

    async def sync_from_parent(self, db: AsyncSession, branch_id: str, user_id: str) -> DatabaseInstance:
        """
        Overwrite a branch's data with its parent's current data.

        Both databases must be running. Failures propagate, and a failed
        restore may leave the branch partially overwritten.
        """
        branch = await self.instances.load_owned(db, branch_id, user_id)
        if not branch.parent_branch_id:
            raise ValidationError("Database is not a branch and has no parent to sync from")

        parent = await self.store.get(db, branch.parent_branch_id)
        if parent is None:
            raise NotFoundError(f"Parent database {branch.parent_branch_id} not found")
        if not branch.is_running:
            raise ValidationError("Branch must be running to sync from its parent")
        if not parent.is_running:
            raise ValidationError("Parent database must be running to sync")

        logger.info(f"Syncing branch {branch.id} from parent {parent.id}")
        await self._fork(parent, branch)

        forked_at = utc_now()
        await self.store.update_fields(db, branch.id, {"forked_at": forked_at})
        branch.forked_at = forked_at
        return branch
