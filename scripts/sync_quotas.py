"""Apply the configured free-tier limits to every free user's quota record."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional

from tokenmeter.core.config import QuotaSettings
from tokenmeter.db.connection import DatabasePool
from tokenmeter.db.services import PostgresUsageStore
from tokenmeter.observability import get_logger, setup_logging
from tokenmeter.usage.engine import QuotaEngine

logger = get_logger("tokenmeter.scripts.sync_quotas")


@dataclass
class SyncReport:
    ok: bool
    messages: List[str] = field(default_factory=list)
    updated_count: int = 0
    created_count: int = 0


async def run_sync(engine: QuotaEngine) -> SyncReport:
    """Run one sync against an already-built engine."""
    result = await engine.quotas.sync_quotas_from_policy()
    return SyncReport(
        ok=True,
        messages=[
            f"Free-tier limits: daily={result.daily_limit} monthly={result.monthly_limit}",
            f"Updated {result.updated_count} existing quota records.",
            f"Created {result.created_count} missing quota records.",
        ],
        updated_count=result.updated_count,
        created_count=result.created_count,
    )


async def _sync_database(settings: QuotaSettings) -> SyncReport:
    if not settings.database_url:
        return SyncReport(ok=False, messages=["DATABASE_URL must be set to sync quotas."])

    db = DatabasePool(dsn=settings.database_url, min_size=1, max_size=2)
    await db.connect()
    try:
        engine = QuotaEngine.from_settings(PostgresUsageStore(db), settings)
        return await run_sync(engine)
    finally:
        await db.close()


def main(settings: Optional[QuotaSettings] = None) -> int:
    setup_logging(json_output=False)
    try:
        settings = settings or QuotaSettings.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        return 1

    try:
        report = asyncio.run(_sync_database(settings))
    except Exception as e:
        logger.exception("Quota sync failed", error=str(e))
        print(f"Quota sync failed: {e}")
        return 1

    print("\n".join(report.messages))
    return 0 if report.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
