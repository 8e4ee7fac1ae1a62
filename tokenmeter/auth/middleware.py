"""
tokenmeter - Identity Dependencies

FastAPI dependencies that turn gateway-forwarded identity headers into an
`Identity`.

The authenticating gateway in front of tokenmeter verifies the caller and
forwards:
- X-User-Id: the user's id (required)
- X-User-Role: free, pro or admin (unknown or missing values read as free)
"""

import uuid
from typing import Optional

from fastapi import Depends, Header, Request

from ..core.errors import MissingIdentityError, PermissionDeniedError
from ..db.memory import InMemoryUsageStore
from ..db.models import Identity, Role
from ..usage.engine import get_engine_optional
from .config import is_prod_mode


class RequestContext:
    """
    Request id / trace id for a request.

    Taken from the observability middleware when it ran, generated otherwise.
    """

    def __init__(self, request: Optional[Request] = None):
        state = getattr(request, "state", None)
        self.request_id = getattr(state, "request_id", "") or f"req_{uuid.uuid4().hex[:24]}"
        self.trace_id = getattr(state, "trace_id", "") or self.request_id.replace("req_", "trace_")


def _register_local_identity(identity: Identity) -> None:
    """Make the caller known to the in-process user directory."""
    engine = get_engine_optional()
    if engine is not None and isinstance(engine.store, InMemoryUsageStore):
        engine.store.register_user(identity.user_id, identity.role)


async def get_identity(
    request: Request,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
) -> Identity:
    """
    FastAPI dependency returning the caller's identity.

    Usage:
        @router.get("/v1/usage")
        async def usage(identity: Identity = Depends(get_identity)):
            ...

    Behavior by mode:
    - LOCAL/TEST: the identity is registered in the in-memory user directory
    - PROD: users are owned by the auth database; nothing is written here

    Raises:
        MissingIdentityError: If X-User-Id is absent or blank
    """
    ctx = RequestContext(request)

    user_id = (x_user_id or "").strip()
    if not user_id:
        raise MissingIdentityError(request_id=ctx.request_id)

    identity = Identity(
        user_id=user_id,
        role=Role.normalize(x_user_role),
        request_id=ctx.request_id,
        trace_id=ctx.trace_id,
    )

    if not is_prod_mode():
        _register_local_identity(identity)

    return identity


async def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    """Dependency that only lets administrators through."""
    if not identity.is_admin:
        raise PermissionDeniedError(request_id=identity.request_id)
    return identity
