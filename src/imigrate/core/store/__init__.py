"""Local migration store: environments, jobs, rows and attempts.

Public API:
- MigrationDB: Connection manager (SQLite, in-memory for tests)
- Persistence: Every read and write the execution core performs
"""

from imigrate.core.store.database import MigrationDB
from imigrate.core.store.persistence import Persistence

__all__ = [
    "MigrationDB",
    "Persistence",
]
