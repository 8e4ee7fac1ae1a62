"""
tokenmeter - Database Schema

DDL for the accounting tables. `users`, `chats` and `messages` are owned by
the surrounding application; they are declared here (IF NOT EXISTS) so a
fresh database can run the engine on its own.
"""

from typing import List

from .connection import DatabasePool


SCHEMA_STATEMENTS: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        username TEXT UNIQUE NOT NULL,
        role TEXT NOT NULL DEFAULT 'free',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_quotas (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL UNIQUE REFERENCES users(id),
        daily_limit INTEGER NOT NULL DEFAULT 1000,
        monthly_limit INTEGER NOT NULL DEFAULT 30000,
        daily_used INTEGER NOT NULL DEFAULT 0 CHECK (daily_used >= 0),
        monthly_used INTEGER NOT NULL DEFAULT 0 CHECK (monthly_used >= 0),
        daily_reset_at TIMESTAMPTZ NOT NULL,
        monthly_reset_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CHECK (daily_limit >= -1),
        CHECK (monthly_limit >= -1)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_usage (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        tokens_used INTEGER NOT NULL CHECK (tokens_used > 0),
        model_name TEXT NOT NULL,
        usage_type TEXT NOT NULL CHECK (usage_type IN ('chat', 'search', 'image', 'video')),
        request_id TEXT NOT NULL,
        cost NUMERIC(18, 8),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_token_usage_user_created ON token_usage (user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_token_usage_created ON token_usage (created_at)",
    """
    CREATE TABLE IF NOT EXISTS chats (
        id TEXT PRIMARY KEY,
        user_id TEXT REFERENCES users(id),
        title TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chats_user ON chats (user_id)",
    """
    CREATE TABLE IF NOT EXISTS messages (
        id BIGSERIAL PRIMARY KEY,
        chat_id TEXT NOT NULL REFERENCES chats(id),
        content TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages (chat_id)",
]


async def apply_schema(db: DatabasePool) -> None:
    """Create all tables and indexes (idempotent)."""
    async with db.transaction() as conn:
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)
