"""
datafork - Self-hosted Database Orchestration & Branching Engine

Provisions Postgres, Redis and Valkey instances as managed containers, keeps
their credentials encrypted at rest, and branches them by copying live data
between running instances.

Table Prefix: datafork
"""

__version__ = "0.4.0"

# =============================================================================
# Table Name Constants. Use these everywhere instead of hardcoded strings
# =============================================================================

TABLE_PREFIX = "datafork"

INSTANCES_TABLE = f"{TABLE_PREFIX}_instances"
PORT_CLAIMS_TABLE = f"{TABLE_PREFIX}_port_claims"

# Owned by the host application; read only for ownership checks
PROJECTS_TABLE = "projects"

CONTAINER_PREFIX = "datafork"
