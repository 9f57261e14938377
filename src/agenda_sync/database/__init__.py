"""Database module for calendar synchronization state.

This module provides:
- SQLAlchemy async database connection
- Token and event models, partitioned by calendar id
"""

from agenda_sync.database.connection import (
    close_db,
    create_tables,
    init_db,
)
from agenda_sync.database.models import (
    Base,
    StoredEvent,
    SyncTokenRow,
    UTCDateTime,
)

__all__ = [
    # Connection
    "init_db",
    "close_db",
    "create_tables",
    # Models
    "Base",
    "StoredEvent",
    "SyncTokenRow",
    "UTCDateTime",
]
