"""
tokenmeter - Admin API

Administrator endpoints for user listing, per-user detail, quota overrides,
system statistics and free-tier quota sync.

Every endpoint requires X-User-Role: admin.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from ...auth.middleware import require_admin
from ...db.models import Identity
from ...usage.engine import QuotaEngine
from ..dependencies import add_standard_headers, get_quota_engine
from ..models import UpdateQuotaRequest


router = APIRouter(prefix="/v1/admin", tags=["admin"])


# ============================================================
# Users
# ============================================================

@router.get("/users")
async def list_users(
    limit: int = Query(20, description="Page size (1-100)"),
    offset: int = Query(0, description="Users to skip"),
    search: Optional[str] = Query(None, description="Substring of username or email"),
    role: Optional[str] = Query(None, description="free, pro or admin"),
    sort_by: str = Query("created_at", description="created_at, username, email, last_login_at"),
    sort_order: str = Query("desc", description="asc or desc"),
    identity: Identity = Depends(require_admin),
    engine: QuotaEngine = Depends(get_quota_engine),
):
    """List users with lifetime token and chat totals."""
    page = await engine.reporter.list_users(
        limit=limit,
        offset=offset,
        search=search,
        role=role,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return JSONResponse(content=page, headers=add_standard_headers(identity))


@router.get("/users/{user_id}")
async def get_user_detail(
    user_id: str,
    identity: Identity = Depends(require_admin),
    engine: QuotaEngine = Depends(get_quota_engine),
):
    """User record, lifetime stats, stored quota record and recent usage."""
    detail = await engine.reporter.user_detail(user_id)
    return JSONResponse(content=detail, headers=add_standard_headers(identity))


@router.patch("/users/{user_id}/quota")
async def update_user_quota(
    user_id: str,
    request: UpdateQuotaRequest,
    identity: Identity = Depends(require_admin),
    engine: QuotaEngine = Depends(get_quota_engine),
):
    """
    Override a user's daily and/or monthly limit.

    Omitted limits are left as they are; -1 makes a window unlimited.
    """
    snapshot = await engine.quotas.set_user_limits(
        user_id,
        daily_limit=request.daily_limit,
        monthly_limit=request.monthly_limit,
    )
    return JSONResponse(
        content={"user_id": user_id, "quota": snapshot.to_dict()},
        headers=add_standard_headers(identity),
    )


# ============================================================
# System
# ============================================================

@router.get("/stats")
async def get_system_stats(
    identity: Identity = Depends(require_admin),
    engine: QuotaEngine = Depends(get_quota_engine),
):
    """System-wide totals, the last 7 days and the top 5 models."""
    stats = await engine.reporter.system_stats()
    return JSONResponse(content=stats, headers=add_standard_headers(identity))


@router.post("/sync-quotas")
async def sync_quotas(
    identity: Identity = Depends(require_admin),
    engine: QuotaEngine = Depends(get_quota_engine),
):
    """Apply the configured free-tier limits to every free user."""
    result = await engine.quotas.sync_quotas_from_policy()
    return JSONResponse(
        content={"success": True, **result.to_dict()},
        headers=add_standard_headers(identity),
    )
