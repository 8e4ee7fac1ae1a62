"""
tokenmeter - Usage API

Endpoints for a user's own usage: current counters, history and summaries.
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from ...auth.middleware import get_identity
from ...db.models import Identity
from ...usage.aggregator import MAX_HISTORY_LIMIT
from ...usage.engine import QuotaEngine
from ..dependencies import add_standard_headers, get_quota_engine


router = APIRouter(prefix="/v1/usage", tags=["usage"])


@router.get("")
async def get_usage(
    identity: Identity = Depends(get_identity),
    engine: QuotaEngine = Depends(get_quota_engine),
):
    """
    Current quota counters plus a 7-day summary.

    Counters are reconciled first, so a user whose day has rolled over sees
    zero daily usage even before their next metered request.
    """
    snapshot = await engine.quotas.get_usage_stats(identity.user_id)
    summary = await engine.reporter.summary(identity.user_id, window_days=7)

    return JSONResponse(
        content={
            "object": "usage",
            "user_id": identity.user_id,
            "current": snapshot.to_dict(),
            "summary": summary.to_dict(),
        },
        headers=add_standard_headers(identity),
    )


@router.get("/history")
async def get_usage_history(
    limit: int = Query(50, description=f"Page size (1-{MAX_HISTORY_LIMIT})"),
    offset: int = Query(0, description="Events to skip"),
    identity: Identity = Depends(get_identity),
    engine: QuotaEngine = Depends(get_quota_engine),
):
    """Usage events for the caller, most recent first."""
    events = await engine.reporter.history(identity.user_id, limit=limit, offset=offset)

    return JSONResponse(
        content={
            "object": "list",
            "history": [e.to_dict() for e in events],
            "limit": limit,
            "offset": offset,
        },
        headers=add_standard_headers(identity),
    )


@router.get("/summary")
async def get_usage_summary(
    days: int = Query(7, description="Trailing window in days"),
    identity: Identity = Depends(get_identity),
    engine: QuotaEngine = Depends(get_quota_engine),
):
    """Totals by UTC day, model and usage type over the trailing window."""
    summary = await engine.reporter.summary(identity.user_id, window_days=days)
    return JSONResponse(content=summary.to_dict(), headers=add_standard_headers(identity))
