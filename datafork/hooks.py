"""
datafork - Startup Hooks

Prepares the host before any database request is served:
validates the vault key, checks the container runtime, creates the data
root, ensures the shared container network and creates the tables.
"""

import logging
from typing import Optional

from . import TABLE_PREFIX
from .config import Settings, get_settings
from .database import get_db_context
from .services.container_orchestrator import ContainerOrchestrator
from .services.credential_manager import CredentialManager
from .services.instance_store import InstanceStore
from .services.volume_service import VolumeService

logger = logging.getLogger("uvicorn.error")


async def on_startup(settings: Optional[Settings] = None) -> dict:
    """
    Called once when the host application starts.

    A bad encryption key raises ConfigurationError and aborts startup.
    Every other step is reported in the returned ``steps`` list; a failed
    runtime or network step turns ``success`` off but does not raise.
    """
    settings = settings or get_settings()
    logger.info(f"datafork ({TABLE_PREFIX}) starting, initializing...")
    results = {"success": True, "steps": []}

    # Step 1: Vault key (fatal when wrong)
    CredentialManager(settings.encryption_key)
    results["steps"].append({"action": "validate_encryption_key", "success": True})

    # Step 2: Container runtime
    gateway = ContainerOrchestrator.from_settings(settings)
    installed, version = await gateway.check_runtime()
    results["steps"].append({
        "action": "check_runtime",
        "success": installed,
        "runtime": settings.container_runtime,
        "version": version,
    })
    if not installed:
        logger.error(f"Container runtime '{settings.container_runtime}' not found")
        results["success"] = False
        results["warning"] = f"Install {settings.container_runtime} before creating databases"

    # Step 3: Data root
    volumes = VolumeService(settings.data_dir)
    try:
        path = volumes.ensure_base_path()
        logger.info(f"Data root ready: {path}")
        results["steps"].append({"action": "create_data_dir", "success": True, "path": str(path)})
    except Exception as e:
        logger.warning(f"Could not create data root: {e}")
        results["success"] = False
        results["steps"].append({"action": "create_data_dir", "success": False, "error": str(e)})

    # Step 4: Shared network
    if installed:
        try:
            created = await gateway.ensure_network()
            results["steps"].append({
                "action": "ensure_network",
                "success": True,
                "network": settings.network_name,
                "created": created,
            })
        except Exception as e:
            logger.warning(f"Could not ensure network {settings.network_name}: {e}")
            results["success"] = False
            results["steps"].append({"action": "ensure_network", "success": False, "error": str(e)})

    # Step 5: Tables
    async with get_db_context(settings.database_url) as db:
        await InstanceStore.create_tables(db)
    results["steps"].append({"action": "create_tables", "success": True})

    results["message"] = "datafork initialized" if results["success"] else "datafork initialized with warnings"
    return results
