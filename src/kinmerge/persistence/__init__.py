"""kinmerge persistence module.

Provides database connectivity, the shared schema and migration support.
"""

from kinmerge.persistence.db import (
    DatabaseConfigError,
    create_engine_for_url,
    get_database_url,
    get_engine,
    reset_engine,
)
from kinmerge.persistence.migrate import (
    get_current_revision,
    get_head_revision,
    run_downgrade,
    run_upgrade,
)
from kinmerge.persistence.schema import apply_schema

__all__ = [
    "DatabaseConfigError",
    "apply_schema",
    "create_engine_for_url",
    "get_current_revision",
    "get_database_url",
    "get_engine",
    "get_head_revision",
    "reset_engine",
    "run_downgrade",
    "run_upgrade",
]
