"""
Event Store
===========
Persistence for security events and IP access list entries.
"""

from .database import Base, Database, create_async_engine
from .event_store import EventStore
from .tables import IPManagementRow, SecurityEventRow

__all__ = [
    "Base",
    "Database",
    "create_async_engine",
    "EventStore",
    "IPManagementRow",
    "SecurityEventRow",
]
