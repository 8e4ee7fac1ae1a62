"""
tokenmeter - In-Memory Usage Store

Process-local store used in local and test modes.

Each operation runs as one critical section under a lock with no awaits
inside, which gives the same atomicity the SQL store gets from single
statements and transactions. Records handed out are copies.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .models import (
    QuotaRecord,
    Role,
    SystemTotals,
    UsageEvent,
    User,
    UserActivity,
    UserUsageRow,
    as_utc,
)
from .store import USER_SORT_FIELDS, UsageStore


@dataclass
class _Chat:
    id: str
    user_id: Optional[str]
    created_at: datetime


def _utc_date(value: datetime):
    return value.astimezone(timezone.utc).date()


class InMemoryUsageStore(UsageStore):
    """Dictionary-backed store with the same semantics as the SQL store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._users: Dict[str, User] = {}
        self._quotas: Dict[str, QuotaRecord] = {}
        self._events: List[UsageEvent] = []
        self._chats: Dict[str, _Chat] = {}
        self._messages: List[str] = []  # chat ids
        self._next_event_id = 1

    # ============================================================
    # Seeding (auth-owned data)
    # ============================================================

    def add_user(self, user: User) -> User:
        with self._lock:
            self._users[user.id] = replace(user)
            return replace(user)

    def register_user(self, user_id: str, role: Role) -> User:
        """Create the user if unknown, otherwise refresh its role."""
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                user = User(
                    id=user_id,
                    username=user_id,
                    role=role,
                    created_at=datetime.now(timezone.utc),
                )
                self._users[user_id] = user
            else:
                user.role = role
            return replace(user)

    def deactivate_user(self, user_id: str) -> None:
        with self._lock:
            if user_id in self._users:
                self._users[user_id].is_active = False

    def add_chat(self, chat_id: str, user_id: Optional[str], created_at: datetime) -> None:
        with self._lock:
            self._chats[chat_id] = _Chat(id=chat_id, user_id=user_id, created_at=created_at)

    def add_message(self, chat_id: str) -> None:
        with self._lock:
            self._messages.append(chat_id)

    # ============================================================
    # UsageStore
    # ============================================================

    async def ping(self) -> bool:
        return True

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            return replace(user) if user else None

    async def get_quota(self, user_id: str) -> Optional[QuotaRecord]:
        with self._lock:
            record = self._quotas.get(user_id)
            return replace(record) if record else None

    async def create_quota(
        self,
        user_id: str,
        daily_limit: int,
        monthly_limit: int,
        daily_reset_at: datetime,
        monthly_reset_at: datetime,
    ) -> QuotaRecord:
        with self._lock:
            if user_id not in self._users:
                raise LookupError(f"user {user_id} does not exist")
            record = self._quotas.get(user_id)
            if record is None:
                now = datetime.now(timezone.utc)
                record = QuotaRecord(
                    user_id=user_id,
                    daily_limit=daily_limit,
                    monthly_limit=monthly_limit,
                    daily_reset_at=as_utc(daily_reset_at),
                    monthly_reset_at=as_utc(monthly_reset_at),
                    created_at=now,
                    updated_at=now,
                )
                self._quotas[user_id] = record
            return replace(record)

    async def roll_daily(
        self, user_id: str, now: datetime, next_reset_at: datetime
    ) -> Optional[QuotaRecord]:
        with self._lock:
            record = self._quotas.get(user_id)
            if record is None or record.daily_reset_at > as_utc(now):
                return None
            record.daily_used = 0
            record.daily_reset_at = as_utc(next_reset_at)
            record.updated_at = now
            return replace(record)

    async def roll_monthly(
        self, user_id: str, now: datetime, next_reset_at: datetime
    ) -> Optional[QuotaRecord]:
        with self._lock:
            record = self._quotas.get(user_id)
            if record is None or record.monthly_reset_at > as_utc(now):
                return None
            record.monthly_used = 0
            record.monthly_reset_at = as_utc(next_reset_at)
            record.updated_at = now
            return replace(record)

    async def set_limits(
        self,
        user_id: str,
        daily_limit: Optional[int] = None,
        monthly_limit: Optional[int] = None,
    ) -> Optional[QuotaRecord]:
        with self._lock:
            record = self._quotas.get(user_id)
            if record is None:
                return None
            if daily_limit is not None:
                record.daily_limit = daily_limit
            if monthly_limit is not None:
                record.monthly_limit = monthly_limit
            record.updated_at = datetime.now(timezone.utc)
            return replace(record)

    async def sync_free_limits(
        self,
        daily_limit: int,
        monthly_limit: int,
        daily_reset_at: datetime,
        monthly_reset_at: datetime,
    ) -> Tuple[int, int]:
        updated = created = 0
        with self._lock:
            now = datetime.now(timezone.utc)
            for user in self._users.values():
                if Role.normalize(user.role) != Role.FREE:
                    continue
                record = self._quotas.get(user.id)
                if record is None:
                    self._quotas[user.id] = QuotaRecord(
                        user_id=user.id,
                        daily_limit=daily_limit,
                        monthly_limit=monthly_limit,
                        daily_reset_at=as_utc(daily_reset_at),
                        monthly_reset_at=as_utc(monthly_reset_at),
                        created_at=now,
                        updated_at=now,
                    )
                    created += 1
                else:
                    record.daily_limit = daily_limit
                    record.monthly_limit = monthly_limit
                    record.updated_at = now
                    updated += 1
        return updated, created

    async def record_usage(self, event: UsageEvent) -> UsageEvent:
        with self._lock:
            record = self._quotas.get(event.user_id)
            if record is None:
                raise LookupError(f"no quota record for user {event.user_id}")

            stored = replace(
                event,
                id=self._next_event_id,
                created_at=event.created_at or datetime.now(timezone.utc),
            )
            self._next_event_id += 1
            self._events.append(stored)

            if not record.is_unlimited:
                record.daily_used += stored.tokens_used
                record.monthly_used += stored.tokens_used
                record.updated_at = stored.created_at
            return replace(stored)

    async def list_events(
        self, user_id: str, limit: int, offset: int = 0
    ) -> List[UsageEvent]:
        with self._lock:
            events = [e for e in self._events if e.user_id == user_id]
        events.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return [replace(e) for e in events[offset:offset + limit]]

    async def events_since(self, user_id: str, since: datetime) -> List[UsageEvent]:
        with self._lock:
            return [
                replace(e) for e in self._events
                if e.user_id == user_id and e.created_at >= since
            ]

    async def system_totals(self, active_since: datetime) -> SystemTotals:
        with self._lock:
            by_role: Dict[str, int] = defaultdict(int)
            for user in self._users.values():
                by_role[user.role.value] += 1
            return SystemTotals(
                total_users=len(self._users),
                active_users=len({
                    e.user_id for e in self._events if e.created_at >= active_since
                }),
                total_tokens=sum(e.tokens_used for e in self._events),
                total_chats=len(self._chats),
                total_messages=len(self._messages),
                users_by_role=dict(by_role),
            )

    async def daily_usage(self, since: datetime) -> List[Dict[str, Any]]:
        tokens: Dict[Any, int] = defaultdict(int)
        users: Dict[Any, set] = defaultdict(set)
        with self._lock:
            for event in self._events:
                if event.created_at < since:
                    continue
                day = _utc_date(event.created_at)
                tokens[day] += event.tokens_used
                users[day].add(event.user_id)
        return [
            {"date": day, "users": len(users[day]), "tokens": tokens[day]}
            for day in sorted(tokens)
        ]

    async def daily_chats(self, since: datetime) -> List[Dict[str, Any]]:
        counts: Dict[Any, int] = defaultdict(int)
        with self._lock:
            for chat in self._chats.values():
                if chat.created_at >= since:
                    counts[_utc_date(chat.created_at)] += 1
        return [{"date": day, "chats": counts[day]} for day in sorted(counts)]

    async def top_models(self, limit: int) -> List[Dict[str, Any]]:
        totals: Dict[str, int] = defaultdict(int)
        with self._lock:
            for event in self._events:
                totals[event.model_name] += event.tokens_used
        ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)
        return [{"model": model, "tokens": tokens} for model, tokens in ranked[:limit]]

    async def list_users(
        self,
        limit: int,
        offset: int,
        search: Optional[str] = None,
        role: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[UserUsageRow], int]:
        if sort_by not in USER_SORT_FIELDS:
            raise ValueError(f"cannot sort users by {sort_by!r}")

        with self._lock:
            users = [replace(u) for u in self._users.values()]
            tokens: Dict[str, int] = defaultdict(int)
            last_event: Dict[str, datetime] = {}
            for event in self._events:
                tokens[event.user_id] += event.tokens_used
                seen = last_event.get(event.user_id)
                if seen is None or event.created_at > seen:
                    last_event[event.user_id] = event.created_at
            chats: Dict[str, int] = defaultdict(int)
            for chat in self._chats.values():
                if chat.user_id:
                    chats[chat.user_id] += 1

        if search:
            needle = search.lower()
            users = [
                u for u in users
                if needle in u.username.lower() or needle in u.email.lower()
            ]
        if role:
            users = [u for u in users if u.role.value == role]

        # NULLs sort last in both directions, like the SQL store
        present = [u for u in users if getattr(u, sort_by) is not None]
        missing = [u for u in users if getattr(u, sort_by) is None]
        present.sort(key=lambda u: getattr(u, sort_by), reverse=(sort_order == "desc"))
        ordered = present + missing

        rows = [
            UserUsageRow(
                user=u,
                total_tokens=tokens.get(u.id, 0),
                total_chats=chats.get(u.id, 0),
                last_event_at=last_event.get(u.id),
            )
            for u in ordered[offset:offset + limit]
        ]
        return rows, len(users)

    async def user_activity(self, user_id: str) -> UserActivity:
        with self._lock:
            events = [e for e in self._events if e.user_id == user_id]
            chat_ids = {c.id for c in self._chats.values() if c.user_id == user_id}
            messages = sum(1 for chat_id in self._messages if chat_id in chat_ids)
        return UserActivity(
            total_tokens=sum(e.tokens_used for e in events),
            total_cost=sum((e.cost or Decimal(0) for e in events), Decimal(0)),
            usage_count=len(events),
            total_chats=len(chat_ids),
            total_messages=messages,
        )
