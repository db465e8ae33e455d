"""
Volume Service for datafork

Manages the per-database data directory bind-mounted into each container.
One directory per database id under the configured data root; no two
databases ever share a mount path.
"""

import logging
import os
import re
import shutil
from pathlib import Path

from ..errors import InternalError

logger = logging.getLogger("uvicorn.error")

# Safe directory name pattern: alphanumeric, dots, underscores, hyphens
# Must start with alphanumeric, max 64 chars
SAFE_NAME_PATTERN = re.compile(r'[a-zA-Z0-9][a-zA-Z0-9._-]{0,63}')


class VolumeService:
    """Creates and removes database data directories."""

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)

    @staticmethod
    def validate_volume_name(name: str) -> bool:
        """
        Validate a directory name is safe for filesystem operations.

        Checks:
        - Name is not empty
        - Matches safe pattern (alphanumeric, dots, underscores, hyphens)
        - No path separators or traversal sequences
        """
        if not name:
            return False
        if not SAFE_NAME_PATTERN.fullmatch(name):
            return False
        if '/' in name or '\\' in name or '..' in name:
            return False
        return True

    @staticmethod
    def _ensure_path_within_base(path: Path, base: Path) -> bool:
        """Ensure the resolved path is inside the resolved base directory."""
        try:
            resolved_path = path.resolve()
            resolved_base = base.resolve()
            return str(resolved_path).startswith(str(resolved_base) + os.sep)
        except (OSError, ValueError):
            return False

    def _target_path(self, database_id: str) -> Path:
        if not self.validate_volume_name(database_id):
            raise InternalError(f"Unsafe data directory name: {database_id!r}")
        target_path = self.base_path / database_id
        if not self._ensure_path_within_base(target_path, self.base_path):
            raise InternalError(f"Path traversal detected: {database_id!r}")
        return target_path

    def ensure_base_path(self) -> Path:
        """Create the data root if it doesn't exist."""
        try:
            self.base_path.mkdir(parents=True, exist_ok=True, mode=0o755)
        except OSError as e:
            raise InternalError(f"Could not create data root {self.base_path}: {e}")
        return self.base_path

    def create_volume(self, database_id: str) -> Path:
        """
        Create the data directory for a database.

        Raises:
            InternalError: If the name is unsafe or the directory cannot be created.
        """
        target_path = self._target_path(database_id)
        try:
            target_path.mkdir(parents=True, exist_ok=True)
            os.chmod(target_path, 0o755)
        except OSError as e:
            logger.error(f"Failed to create data directory {target_path}: {e}")
            raise InternalError(f"Could not create data directory {target_path}: {e}")
        logger.info(f"Created data directory {target_path}")
        return target_path

    def remove_volume(self, database_id: str) -> bool:
        """
        Remove a database's data directory and everything in it.

        Returns:
            True if removed, False if it didn't exist.
        """
        target_path = self._target_path(database_id)
        if not target_path.exists():
            return False
        try:
            shutil.rmtree(target_path)
        except OSError as e:
            raise InternalError(f"Could not remove data directory {target_path}: {e}")
        logger.info(f"Removed data directory {target_path}")
        return True
