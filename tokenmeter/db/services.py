"""
tokenmeter - PostgreSQL Usage Store

asyncpg-backed implementation of the usage store.

Counter updates are SQL arithmetic (`daily_used = daily_used + $2`) and
rollovers are conditional updates on the stored reset timestamp, so
concurrent requests for the same user never lose updates.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .connection import DatabasePool
from .models import (
    QuotaRecord,
    Role,
    SystemTotals,
    UsageEvent,
    User,
    UserActivity,
    UserUsageRow,
)
from .store import USER_SORT_FIELDS, UsageStore


class PostgresUsageStore(UsageStore):
    """
    Usage store on PostgreSQL.

    Handles:
    - Lazy quota record materialization (INSERT ... ON CONFLICT DO NOTHING)
    - Compare-and-set rollovers
    - Transactional event append + counter increment
    - Reporting aggregates
    """

    def __init__(self, db: DatabasePool):
        self.db = db

    async def ping(self) -> bool:
        return await self.db.fetchval("SELECT 1") == 1

    async def get_user(self, user_id: str) -> Optional[User]:
        query = "SELECT * FROM users WHERE id = $1"
        record = await self.db.fetchrow(query, user_id)
        if record is None:
            return None
        return User.from_record(record)

    # ============================================================
    # Quota records
    # ============================================================

    async def get_quota(self, user_id: str) -> Optional[QuotaRecord]:
        query = "SELECT * FROM user_quotas WHERE user_id = $1"
        record = await self.db.fetchrow(query, user_id)
        if record is None:
            return None
        return QuotaRecord.from_record(record)

    async def create_quota(
        self,
        user_id: str,
        daily_limit: int,
        monthly_limit: int,
        daily_reset_at: datetime,
        monthly_reset_at: datetime,
    ) -> QuotaRecord:
        insert = """
            INSERT INTO user_quotas (
                user_id, daily_limit, monthly_limit,
                daily_reset_at, monthly_reset_at
            )
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (user_id) DO NOTHING
        """
        async with self.db.acquire() as conn:
            await conn.execute(
                insert,
                user_id,
                daily_limit,
                monthly_limit,
                daily_reset_at,
                monthly_reset_at,
            )
            record = await conn.fetchrow(
                "SELECT * FROM user_quotas WHERE user_id = $1", user_id
            )
        return QuotaRecord.from_record(record)

    async def roll_daily(
        self, user_id: str, now: datetime, next_reset_at: datetime
    ) -> Optional[QuotaRecord]:
        query = """
            UPDATE user_quotas
            SET daily_used = 0, daily_reset_at = $3, updated_at = NOW()
            WHERE user_id = $1 AND daily_reset_at <= $2
            RETURNING *
        """
        record = await self.db.fetchrow(query, user_id, now, next_reset_at)
        if record is None:
            return None
        return QuotaRecord.from_record(record)

    async def roll_monthly(
        self, user_id: str, now: datetime, next_reset_at: datetime
    ) -> Optional[QuotaRecord]:
        query = """
            UPDATE user_quotas
            SET monthly_used = 0, monthly_reset_at = $3, updated_at = NOW()
            WHERE user_id = $1 AND monthly_reset_at <= $2
            RETURNING *
        """
        record = await self.db.fetchrow(query, user_id, now, next_reset_at)
        if record is None:
            return None
        return QuotaRecord.from_record(record)

    async def set_limits(
        self,
        user_id: str,
        daily_limit: Optional[int] = None,
        monthly_limit: Optional[int] = None,
    ) -> Optional[QuotaRecord]:
        query = """
            UPDATE user_quotas
            SET daily_limit = COALESCE($2, daily_limit),
                monthly_limit = COALESCE($3, monthly_limit),
                updated_at = NOW()
            WHERE user_id = $1
            RETURNING *
        """
        record = await self.db.fetchrow(query, user_id, daily_limit, monthly_limit)
        if record is None:
            return None
        return QuotaRecord.from_record(record)

    async def sync_free_limits(
        self,
        daily_limit: int,
        monthly_limit: int,
        daily_reset_at: datetime,
        monthly_reset_at: datetime,
    ) -> Tuple[int, int]:
        # xmax = 0 only for freshly inserted rows
        query = """
            WITH synced AS (
                INSERT INTO user_quotas (
                    user_id, daily_limit, monthly_limit,
                    daily_reset_at, monthly_reset_at
                )
                SELECT id, $1, $2, $3, $4
                FROM users
                WHERE LOWER(TRIM(COALESCE(role, ''))) NOT IN ('pro', 'admin')
                ON CONFLICT (user_id) DO UPDATE SET
                    daily_limit = EXCLUDED.daily_limit,
                    monthly_limit = EXCLUDED.monthly_limit,
                    updated_at = NOW()
                RETURNING (xmax = 0) AS inserted
            )
            SELECT
                COUNT(*) FILTER (WHERE NOT inserted) AS updated_count,
                COUNT(*) FILTER (WHERE inserted) AS created_count
            FROM synced
        """
        row = await self.db.fetchrow(
            query, daily_limit, monthly_limit, daily_reset_at, monthly_reset_at
        )
        return row["updated_count"] or 0, row["created_count"] or 0

    # ============================================================
    # Usage events
    # ============================================================

    async def record_usage(self, event: UsageEvent) -> UsageEvent:
        insert = """
            INSERT INTO token_usage (
                user_id, tokens_used, model_name, usage_type, request_id, cost,
                created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, COALESCE($7, NOW()))
            RETURNING *
        """
        increment = """
            UPDATE user_quotas
            SET daily_used = daily_used + $2,
                monthly_used = monthly_used + $2,
                updated_at = NOW()
            WHERE user_id = $1 AND daily_limit <> -1
        """
        async with self.db.transaction() as conn:
            exists = await conn.fetchval(
                "SELECT 1 FROM user_quotas WHERE user_id = $1", event.user_id
            )
            if exists is None:
                raise LookupError(f"no quota record for user {event.user_id}")
            record = await conn.fetchrow(
                insert,
                event.user_id,
                event.tokens_used,
                event.model_name,
                event.usage_type.value,
                event.request_id,
                event.cost,
                event.created_at,
            )
            await conn.execute(increment, event.user_id, event.tokens_used)
        return UsageEvent.from_record(record)

    async def list_events(
        self, user_id: str, limit: int, offset: int = 0
    ) -> List[UsageEvent]:
        query = """
            SELECT * FROM token_usage
            WHERE user_id = $1
            ORDER BY created_at DESC, id DESC
            LIMIT $2 OFFSET $3
        """
        records = await self.db.fetch(query, user_id, limit, offset)
        return [UsageEvent.from_record(r) for r in records]

    async def events_since(self, user_id: str, since: datetime) -> List[UsageEvent]:
        query = """
            SELECT * FROM token_usage
            WHERE user_id = $1 AND created_at >= $2
            ORDER BY created_at
        """
        records = await self.db.fetch(query, user_id, since)
        return [UsageEvent.from_record(r) for r in records]

    # ============================================================
    # Reporting
    # ============================================================

    async def system_totals(self, active_since: datetime) -> SystemTotals:
        totals_query = """
            SELECT
                (SELECT COUNT(*) FROM users) AS total_users,
                (SELECT COUNT(DISTINCT user_id) FROM token_usage
                    WHERE created_at >= $1) AS active_users,
                (SELECT COALESCE(SUM(tokens_used), 0) FROM token_usage) AS total_tokens,
                (SELECT COUNT(*) FROM chats) AS total_chats,
                (SELECT COUNT(*) FROM messages) AS total_messages
        """
        roles_query = "SELECT role, COUNT(*) AS count FROM users GROUP BY role"

        row = await self.db.fetchrow(totals_query, active_since)
        role_rows = await self.db.fetch(roles_query)

        by_role: Dict[str, int] = {}
        for r in role_rows:
            role = Role.normalize(r["role"]).value
            by_role[role] = by_role.get(role, 0) + r["count"]

        return SystemTotals(
            total_users=row["total_users"] or 0,
            active_users=row["active_users"] or 0,
            total_tokens=int(row["total_tokens"] or 0),
            total_chats=row["total_chats"] or 0,
            total_messages=row["total_messages"] or 0,
            users_by_role=by_role,
        )

    async def daily_usage(self, since: datetime) -> List[Dict[str, Any]]:
        query = """
            SELECT
                (created_at AT TIME ZONE 'UTC')::date AS day,
                COUNT(DISTINCT user_id) AS users,
                SUM(tokens_used) AS tokens
            FROM token_usage
            WHERE created_at >= $1
            GROUP BY day
            ORDER BY day
        """
        records = await self.db.fetch(query, since)
        return [
            {"date": r["day"], "users": r["users"], "tokens": int(r["tokens"] or 0)}
            for r in records
        ]

    async def daily_chats(self, since: datetime) -> List[Dict[str, Any]]:
        query = """
            SELECT (created_at AT TIME ZONE 'UTC')::date AS day, COUNT(*) AS chats
            FROM chats
            WHERE created_at >= $1
            GROUP BY day
            ORDER BY day
        """
        records = await self.db.fetch(query, since)
        return [{"date": r["day"], "chats": r["chats"]} for r in records]

    async def top_models(self, limit: int) -> List[Dict[str, Any]]:
        query = """
            SELECT model_name, SUM(tokens_used) AS tokens
            FROM token_usage
            GROUP BY model_name
            ORDER BY tokens DESC
            LIMIT $1
        """
        records = await self.db.fetch(query, limit)
        return [
            {"model": r["model_name"], "tokens": int(r["tokens"] or 0)}
            for r in records
        ]

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
        direction = "ASC" if sort_order == "asc" else "DESC"

        where_clauses = []
        params: List[Any] = []
        param_num = 1

        if search:
            where_clauses.append(
                f"(u.username ILIKE ${param_num} OR u.email ILIKE ${param_num})"
            )
            params.append(f"%{search}%")
            param_num += 1

        if role:
            where_clauses.append(f"u.role = ${param_num}")
            params.append(role)
            param_num += 1

        where = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""

        count_query = f"SELECT COUNT(*) FROM users u {where}"
        page_query = f"""
            SELECT
                u.*,
                COALESCE(t.total_tokens, 0) AS total_tokens,
                t.last_event_at,
                COALESCE(c.total_chats, 0) AS total_chats
            FROM users u
            LEFT JOIN (
                SELECT user_id, SUM(tokens_used) AS total_tokens,
                       MAX(created_at) AS last_event_at
                FROM token_usage
                GROUP BY user_id
            ) t ON t.user_id = u.id
            LEFT JOIN (
                SELECT user_id, COUNT(*) AS total_chats
                FROM chats
                GROUP BY user_id
            ) c ON c.user_id = u.id
            {where}
            ORDER BY u.{sort_by} {direction} NULLS LAST
            LIMIT ${param_num} OFFSET ${param_num + 1}
        """

        total = await self.db.fetchval(count_query, *params)
        records = await self.db.fetch(page_query, *params, limit, offset)

        rows = [
            UserUsageRow(
                user=User.from_record(r),
                total_tokens=int(r["total_tokens"] or 0),
                total_chats=r["total_chats"] or 0,
                last_event_at=r["last_event_at"],
            )
            for r in records
        ]
        return rows, total or 0

    async def user_activity(self, user_id: str) -> UserActivity:
        usage_query = """
            SELECT
                COALESCE(SUM(tokens_used), 0) AS total_tokens,
                COALESCE(SUM(cost), 0) AS total_cost,
                COUNT(*) AS usage_count
            FROM token_usage
            WHERE user_id = $1
        """
        chat_query = """
            SELECT
                COUNT(DISTINCT c.id) AS total_chats,
                COUNT(m.id) AS total_messages
            FROM chats c
            LEFT JOIN messages m ON m.chat_id = c.id
            WHERE c.user_id = $1
        """
        usage = await self.db.fetchrow(usage_query, user_id)
        chats = await self.db.fetchrow(chat_query, user_id)

        return UserActivity(
            total_tokens=int(usage["total_tokens"] or 0),
            total_cost=Decimal(usage["total_cost"] or 0),
            usage_count=usage["usage_count"] or 0,
            total_chats=chats["total_chats"] or 0,
            total_messages=chats["total_messages"] or 0,
        )
