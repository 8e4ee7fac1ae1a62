"""
tokenmeter - Usage Aggregation

Read-only reporting over usage events and quota records.

Features:
- Paginated per-user history
- Trailing-window summaries (by UTC day, model, usage type)
- System-wide statistics for the admin dashboard
- Admin user listing and per-user detail

Missing data is never an error here; absence reads as zero or empty.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..core.errors import InvalidRequestError, UserNotFoundError
from ..db.models import Role, UsageEvent
from ..db.store import USER_SORT_FIELDS, UsageStore
from .scheduler import ResetScheduler

MAX_HISTORY_LIMIT = 500
MAX_USER_PAGE = 100
ACTIVE_USER_WINDOW_DAYS = 30
DAILY_STATS_WINDOW_DAYS = 7
RECENT_EVENTS_LIMIT = 10
MAX_SUMMARY_WINDOW_DAYS = 3650


@dataclass
class UsageSummary:
    """Grouped totals over a trailing window of events."""
    window_days: int
    daily_totals: Dict[str, int] = field(default_factory=dict)
    model_totals: Dict[str, int] = field(default_factory=dict)
    type_totals: Dict[str, int] = field(default_factory=dict)
    total_tokens: int = 0
    total_cost: Decimal = Decimal(0)
    event_count: int = 0

    @classmethod
    def from_events(cls, events: List[UsageEvent], window_days: int) -> "UsageSummary":
        daily: Dict[str, int] = defaultdict(int)
        by_model: Dict[str, int] = defaultdict(int)
        by_type: Dict[str, int] = defaultdict(int)
        total_cost = Decimal(0)

        for event in events:
            day = event.created_at.astimezone(timezone.utc).date().isoformat()
            daily[day] += event.tokens_used
            by_model[event.model_name] += event.tokens_used
            by_type[event.usage_type.value] += event.tokens_used
            if event.cost is not None:
                total_cost += event.cost

        return cls(
            window_days=window_days,
            daily_totals=dict(sorted(daily.items())),
            model_totals=dict(by_model),
            type_totals=dict(by_type),
            total_tokens=sum(e.tokens_used for e in events),
            total_cost=total_cost,
            event_count=len(events),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window_days": self.window_days,
            "daily_totals": self.daily_totals,
            "model_totals": self.model_totals,
            "type_totals": self.type_totals,
            "total_tokens": self.total_tokens,
            "total_cost": float(self.total_cost),
            "event_count": self.event_count,
        }


class UsageReporter:
    """Projections over persisted usage for users and administrators."""

    def __init__(self, store: UsageStore, scheduler: ResetScheduler):
        self.store = store
        self.scheduler = scheduler

    async def history(self, user_id: str, limit: int = 50, offset: int = 0) -> List[UsageEvent]:
        """Usage events for a user, most recent first."""
        if not 1 <= limit <= MAX_HISTORY_LIMIT:
            raise InvalidRequestError(
                f"limit must be between 1 and {MAX_HISTORY_LIMIT}", param="limit"
            )
        if offset < 0:
            raise InvalidRequestError("offset must be >= 0", param="offset")
        return await self.store.list_events(user_id, limit, offset)

    async def summary(self, user_id: str, window_days: int = 7) -> UsageSummary:
        """Totals over events created within the last `window_days` days."""
        if not 1 <= window_days <= MAX_SUMMARY_WINDOW_DAYS:
            raise InvalidRequestError(
                f"days must be between 1 and {MAX_SUMMARY_WINDOW_DAYS}", param="days"
            )
        since = self.scheduler.now() - timedelta(days=window_days)
        events = await self.store.events_since(user_id, since)
        return UsageSummary.from_events(events, window_days)

    async def system_stats(self, top_n: int = 5) -> Dict[str, Any]:
        """
        System-wide totals for the admin dashboard.

        daily_stats covers the last 7 days and includes any date with usage
        or chat creation. top_models percentages are shares of the top-N
        token total.
        """
        now = self.scheduler.now()
        totals = await self.store.system_totals(now - timedelta(days=ACTIVE_USER_WINDOW_DAYS))
        since = now - timedelta(days=DAILY_STATS_WINDOW_DAYS)
        usage_days = await self.store.daily_usage(since)
        chat_days = await self.store.daily_chats(since)
        models = await self.store.top_models(top_n)

        daily: Dict[Any, Dict[str, Any]] = {}
        for row in usage_days:
            daily[row["date"]] = {
                "date": row["date"].isoformat(),
                "users": row["users"],
                "tokens": row["tokens"],
                "chats": 0,
            }
        for row in chat_days:
            entry = daily.setdefault(row["date"], {
                "date": row["date"].isoformat(),
                "users": 0,
                "tokens": 0,
                "chats": 0,
            })
            entry["chats"] = row["chats"]

        top_total = sum(m["tokens"] for m in models)
        top_models = [
            {
                "model": m["model"],
                "tokens": m["tokens"],
                "percentage": round(m["tokens"] / top_total * 100, 2) if top_total else 0.0,
            }
            for m in models
        ]

        return {
            "total_users": totals.total_users,
            "active_users": totals.active_users,
            "total_tokens_used": totals.total_tokens,
            "total_chats": totals.total_chats,
            "total_messages": totals.total_messages,
            "average_tokens_per_user": (
                round(totals.total_tokens / totals.total_users, 2) if totals.total_users else 0.0
            ),
            "users_by_role": {
                role.value: totals.users_by_role.get(role.value, 0) for role in Role
            },
            "daily_stats": [daily[day] for day in sorted(daily)],
            "top_models": top_models,
        }

    async def list_users(
        self,
        limit: int = 20,
        offset: int = 0,
        search: Optional[str] = None,
        role: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Dict[str, Any]:
        """Admin listing of users with derived totals."""
        if not 1 <= limit <= MAX_USER_PAGE:
            raise InvalidRequestError(f"limit must be between 1 and {MAX_USER_PAGE}", param="limit")
        if offset < 0:
            raise InvalidRequestError("offset must be >= 0", param="offset")
        if sort_by not in USER_SORT_FIELDS:
            raise InvalidRequestError(
                f"sort_by must be one of: {', '.join(USER_SORT_FIELDS)}", param="sort_by"
            )
        if sort_order not in ("asc", "desc"):
            raise InvalidRequestError("sort_order must be asc or desc", param="sort_order")
        if role is not None and role not in {r.value for r in Role}:
            raise InvalidRequestError("role must be one of: free, pro, admin", param="role")

        rows, total = await self.store.list_users(
            limit=limit,
            offset=offset,
            search=search or None,
            role=role,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        return {
            "users": [row.to_dict() for row in rows],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    async def user_detail(self, user_id: str) -> Dict[str, Any]:
        """
        User, lifetime stats, quota record and recent events.

        The quota record is reported as stored (null when never created).
        """
        user = await self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        activity = await self.store.user_activity(user_id)
        quota = await self.store.get_quota(user_id)
        recent = await self.store.list_events(user_id, RECENT_EVENTS_LIMIT, 0)

        return {
            "user": user.to_dict(),
            "stats": activity.to_dict(),
            "quota": quota.to_dict() if quota else None,
            "recent_usage": [e.to_dict() for e in recent],
        }
