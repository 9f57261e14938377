"""FastAPI application and routes.

This module provides the read-only HTTP surface of the sync engine.

## API Structure

- /health - Liveness check
- /api/calendars - Sync state per configured calendar
- /api/calendars/{id}/snapshot - Latest snapshot of a calendar
- /api/calendars/{id}/next - Event in progress or next to start
- /api/calendars/{id}/sync - Run a sync cycle now (POST)
"""

from agenda_sync.api.app import create_app

__all__ = ["create_app"]
