"""Pull-based calendar synchronization.

Keeps a local store of calendar events in sync with Google Calendar using
incremental sync tokens, expands recurring events locally and publishes an
ordered snapshot of each calendar's upcoming window.
"""

__version__ = "0.1.0"
