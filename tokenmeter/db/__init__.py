"""
tokenmeter - Database Layer

Quota records, usage events and the stores that persist them.
"""

from .connection import DatabasePool, get_db, get_db_optional, init_db, close_db
from .models import (
    UNLIMITED,
    Role,
    UsageType,
    User,
    QuotaRecord,
    UsageEvent,
    UserUsageRow,
    UserActivity,
    SystemTotals,
    Identity,
)
from .store import UsageStore
from .memory import InMemoryUsageStore
from .services import PostgresUsageStore
from .schema import apply_schema

__all__ = [
    "DatabasePool",
    "get_db",
    "get_db_optional",
    "init_db",
    "close_db",
    "UNLIMITED",
    "Role",
    "UsageType",
    "User",
    "QuotaRecord",
    "UsageEvent",
    "UserUsageRow",
    "UserActivity",
    "SystemTotals",
    "Identity",
    "UsageStore",
    "InMemoryUsageStore",
    "PostgresUsageStore",
    "apply_schema",
]
