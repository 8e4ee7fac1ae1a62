"""
tokenmeter - Runtime Mode Configuration

Handles local / test / production mode and startup safety checks.
"""

import os
from enum import Enum
from typing import List

from ..core.config import QuotaSettings


class RunMode(str, Enum):
    """Deployment mode."""

    LOCAL = "local"  # In-memory store, identities registered on first sight
    PROD = "prod"    # PostgreSQL-backed store
    TEST = "test"    # Deterministic in-memory store for the test suite


def get_run_mode() -> RunMode:
    """
    Get the current run mode.

    MODE must be one of: local, prod/production, test.

    Default: prod (fail-closed default for safer deployments).
    """
    mode = os.getenv("MODE", "prod").lower().strip()
    if mode in {"prod", "production"}:
        return RunMode.PROD
    if mode == "local":
        return RunMode.LOCAL
    if mode == "test":
        return RunMode.TEST
    raise ValueError("Invalid MODE. Use one of: local, prod, production, test")


def is_local_mode() -> bool:
    return get_run_mode() == RunMode.LOCAL


def is_prod_mode() -> bool:
    return get_run_mode() == RunMode.PROD


def is_test_mode() -> bool:
    return get_run_mode() == RunMode.TEST


def get_cors_allowed_origins() -> List[str]:
    """Parse CORS_ALLOW_ORIGINS from environment."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "")
    if not raw.strip():
        return []
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def validate_runtime_config() -> None:
    """
    Fail closed for unsafe or malformed startup configuration.

    Quota settings are parsed in every mode so a bad limit or cost override
    stops startup instead of the first metered request.
    """
    try:
        QuotaSettings.from_env()
    except ValueError as e:
        raise RuntimeError(f"Invalid quota configuration: {e}") from e

    if get_run_mode() in {RunMode.LOCAL, RunMode.TEST}:
        return

    if not os.getenv("DATABASE_URL"):
        raise RuntimeError("DATABASE_URL is required in production mode")

    origins = get_cors_allowed_origins()
    if not origins:
        raise RuntimeError("CORS_ALLOW_ORIGINS must be set in production mode")
    if "*" in origins:
        raise RuntimeError("CORS_ALLOW_ORIGINS cannot include '*' in production mode")
