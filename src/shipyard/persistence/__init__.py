"""
shipyard — persistence layer

Purpose
- Run history storage: SQLite state DB, migrations and repositories.

Functional requirements
- Readers (``history``, ``show``) may run while a pipeline is writing.
"""

from shipyard.persistence.repositories import RunRepo, StageHistoryEntry
from shipyard.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "RunRepo",
    "StageHistoryEntry",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
]
