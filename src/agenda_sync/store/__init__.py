"""Durable storage for sync tokens and event records."""

from agenda_sync.store.events import EventStore, should_apply, to_record
from agenda_sync.store.tokens import TokenStore

__all__ = [
    "EventStore",
    "TokenStore",
    "should_apply",
    "to_record",
]
