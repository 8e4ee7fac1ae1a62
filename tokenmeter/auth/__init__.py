"""
tokenmeter - Identity Module

Provides caller identity for requests and run-mode configuration.
"""

from .middleware import (
    RequestContext,
    get_identity,
    require_admin,
)
from .config import (
    RunMode,
    get_run_mode,
    is_local_mode,
    is_prod_mode,
    is_test_mode,
    get_cors_allowed_origins,
    validate_runtime_config,
)

__all__ = [
    "RequestContext",
    "get_identity",
    "require_admin",
    "RunMode",
    "get_run_mode",
    "is_local_mode",
    "is_prod_mode",
    "is_test_mode",
    "get_cors_allowed_origins",
    "validate_runtime_config",
]
