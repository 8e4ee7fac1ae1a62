"""
tokenmeter - API Dependencies

Shared dependencies for FastAPI routes.
"""

from typing import Dict

from ..core.errors import ErrorDetails, ErrorType, InfraError
from ..db.models import Identity
from ..usage.engine import QuotaEngine, get_engine_optional


def get_quota_engine() -> QuotaEngine:
    """
    Get the engine installed by the server lifespan.

    Raises a retryable 503 while the server is still starting up.
    """
    engine = get_engine_optional()
    if engine is None:
        raise InfraError(
            ErrorDetails(
                code="service_unavailable",
                message="Quota engine not initialized. Server may be starting up.",
                type=ErrorType.INFRA,
                request_id="",
                retryable=True,
                retry_after=5,
            ),
            status_code=503,
        )
    return engine


def add_standard_headers(identity: Identity, **extra_headers) -> Dict[str, str]:
    """Request/trace id headers plus any non-None extras."""
    return {
        "X-Request-Id": identity.request_id,
        "X-Trace-Id": identity.trace_id,
        **{k: str(v) for k, v in extra_headers.items() if v is not None},
    }
