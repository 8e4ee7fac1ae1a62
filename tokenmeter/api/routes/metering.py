"""
tokenmeter - Metering API

The two calls a metered service makes around each AI request:
- POST /v1/metering/check before the work (429 when over quota)
- POST /v1/metering/record after it, with the real token count
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ...auth.middleware import get_identity
from ...core.errors import QuotaExceededError
from ...db.models import Identity
from ...usage.engine import QuotaEngine
from ...usage.estimator import estimate_tokens
from ..dependencies import add_standard_headers, get_quota_engine
from ..models import CheckQuotaRequest, RecordUsageRequest


router = APIRouter(prefix="/v1/metering", tags=["metering"])


@router.post("/check")
async def check_quota(
    request: CheckQuotaRequest,
    identity: Identity = Depends(get_identity),
    engine: QuotaEngine = Depends(get_quota_engine),
):
    """
    Pre-flight admission check.

    **Example:**
    ```
    POST /v1/metering/check
    {"text": "Summarize this article ..."}
    ```
    """
    if request.estimated_tokens is not None:
        estimated = request.estimated_tokens
    elif request.text:
        estimated = estimate_tokens(request.text)
    else:
        estimated = 0

    result = await engine.check_quota(identity.user_id, estimated)

    if not result.allowed:
        raise QuotaExceededError(
            reason=result.reason,
            scope=result.scope,
            reset_at=result.reset_at,
            retry_after=result.retry_after,
            usage=result.usage.to_dict() if result.usage else None,
            request_id=identity.request_id,
        )

    return JSONResponse(
        content={**result.to_dict(), "estimated_tokens": estimated},
        headers=add_standard_headers(identity),
    )


@router.post("/record")
async def record_usage(
    request: RecordUsageRequest,
    identity: Identity = Depends(get_identity),
    engine: QuotaEngine = Depends(get_quota_engine),
):
    """
    Record actual token consumption.

    Recording never refuses on quota grounds; a failure to persist is a
    500 `recording_failed` error and must not be ignored by the caller.
    """
    event = await engine.record(
        identity.user_id,
        request.tokens,
        request.model,
        usage_type=request.usage_type,
        request_id=request.request_id or identity.request_id,
    )

    return JSONResponse(
        content={"object": "usage_event", **event.to_dict()},
        headers=add_standard_headers(identity),
    )
