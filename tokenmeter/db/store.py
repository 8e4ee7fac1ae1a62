"""
tokenmeter - Usage Store Interface

Abstract storage contract for quota records and usage events.

Every counter mutation is a single atomic storage operation: increments are
"add N to the stored value" and rollovers are compare-and-set on the stored
reset timestamp. Callers never read a record, change it in memory and write
it back.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .models import (
    QuotaRecord,
    SystemTotals,
    UsageEvent,
    User,
    UserActivity,
    UserUsageRow,
)


USER_SORT_FIELDS = ("created_at", "username", "email", "last_login_at")


class UsageStore(ABC):
    """Persistence for quota records, usage events and read-only user data."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check the store is reachable."""
        pass

    # ============================================================
    # Users (read-only, owned by auth)
    # ============================================================

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        pass

    # ============================================================
    # Quota records
    # ============================================================

    @abstractmethod
    async def get_quota(self, user_id: str) -> Optional[QuotaRecord]:
        pass

    @abstractmethod
    async def create_quota(
        self,
        user_id: str,
        daily_limit: int,
        monthly_limit: int,
        daily_reset_at: datetime,
        monthly_reset_at: datetime,
    ) -> QuotaRecord:
        """
        Insert a quota record unless one already exists.

        Returns the stored record, which is the concurrent winner's row if
        another request materialized it first.
        """
        pass

    @abstractmethod
    async def roll_daily(
        self, user_id: str, now: datetime, next_reset_at: datetime
    ) -> Optional[QuotaRecord]:
        """
        Zero daily usage if the stored daily_reset_at is still <= now.

        Returns the updated record, or None when nothing was rolled.
        """
        pass

    @abstractmethod
    async def roll_monthly(
        self, user_id: str, now: datetime, next_reset_at: datetime
    ) -> Optional[QuotaRecord]:
        """Monthly counterpart of roll_daily."""
        pass

    @abstractmethod
    async def set_limits(
        self,
        user_id: str,
        daily_limit: Optional[int] = None,
        monthly_limit: Optional[int] = None,
    ) -> Optional[QuotaRecord]:
        """Overwrite the given limits on an existing record."""
        pass

    @abstractmethod
    async def sync_free_limits(
        self,
        daily_limit: int,
        monthly_limit: int,
        daily_reset_at: datetime,
        monthly_reset_at: datetime,
    ) -> Tuple[int, int]:
        """
        Upsert limits for every free-tier user.

        A user is free-tier when its stored role normalizes to free, so
        unknown or legacy role values are included.
        Existing records keep their counters and reset timestamps; missing
        records are created with the given reset timestamps.

        Returns:
            Tuple of (updated_count, created_count)
        """
        pass

    # ============================================================
    # Usage events
    # ============================================================

    @abstractmethod
    async def record_usage(self, event: UsageEvent) -> UsageEvent:
        """
        Append an event and add its tokens to the user's counters.

        Both happen in one transaction; counters of unlimited records are
        left untouched. Raises if the user has no quota record.
        """
        pass

    @abstractmethod
    async def list_events(
        self, user_id: str, limit: int, offset: int = 0
    ) -> List[UsageEvent]:
        """Events for a user, most recent first."""
        pass

    @abstractmethod
    async def events_since(self, user_id: str, since: datetime) -> List[UsageEvent]:
        pass

    # ============================================================
    # Reporting
    # ============================================================

    @abstractmethod
    async def system_totals(self, active_since: datetime) -> SystemTotals:
        pass

    @abstractmethod
    async def daily_usage(self, since: datetime) -> List[Dict[str, Any]]:
        """Rows of {date, users, tokens} per UTC date, ascending."""
        pass

    @abstractmethod
    async def daily_chats(self, since: datetime) -> List[Dict[str, Any]]:
        """Rows of {date, chats} per UTC date, ascending."""
        pass

    @abstractmethod
    async def top_models(self, limit: int) -> List[Dict[str, Any]]:
        """Rows of {model, tokens} ordered by tokens descending."""
        pass

    @abstractmethod
    async def list_users(
        self,
        limit: int,
        offset: int,
        search: Optional[str] = None,
        role: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[UserUsageRow], int]:
        """
        Page through users with derived activity totals.

        Returns:
            Tuple of (rows, total matching users)
        """
        pass

    @abstractmethod
    async def user_activity(self, user_id: str) -> UserActivity:
        pass
