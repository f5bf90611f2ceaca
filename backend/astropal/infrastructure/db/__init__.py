"""
Database Infrastructure Package for Astropal

Exports database utilities.
"""

from astropal.infrastructure.db.database import (
    DatabaseManager,
    get_db_manager,
    init_db,
    close_db,
)


__all__ = [
    "DatabaseManager",
    "get_db_manager",
    "init_db",
    "close_db",
]
