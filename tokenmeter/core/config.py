"""
tokenmeter - Runtime Settings

Typed view over the environment variables that shape quota accounting.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Dict, Optional


DEFAULT_FREE_DAILY_LIMIT = 1000
DEFAULT_FREE_MONTHLY_LIMIT = 30000


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < -1:
        raise ValueError(f"{name} must be -1 (unlimited) or >= 0, got {value}")
    return value


def _parse_cost_overrides(raw: str) -> Dict[str, Dict[str, float]]:
    """
    Parse MODEL_COST_OVERRIDES.

    Format: {"model-name": {"input": 0.001, "output": 0.002}, ...}
    Prices are USD per 1000 tokens.
    """
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"MODEL_COST_OVERRIDES is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise ValueError("MODEL_COST_OVERRIDES must be a JSON object")

    overrides: Dict[str, Dict[str, float]] = {}
    for model, prices in data.items():
        if not isinstance(prices, dict):
            raise ValueError(f"MODEL_COST_OVERRIDES[{model!r}] must be an object")
        try:
            overrides[model] = {
                "input": float(prices.get("input", 0)),
                "output": float(prices.get("output", 0)),
            }
        except (TypeError, ValueError):
            raise ValueError(f"MODEL_COST_OVERRIDES[{model!r}] prices must be numbers")
    return overrides


@dataclass
class QuotaSettings:
    """Settings for the accounting engine."""
    free_daily_limit: int = DEFAULT_FREE_DAILY_LIMIT
    free_monthly_limit: int = DEFAULT_FREE_MONTHLY_LIMIT
    model_cost_overrides: Dict[str, Dict[str, float]] = field(default_factory=dict)
    database_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "QuotaSettings":
        return cls(
            free_daily_limit=_int_env("FREE_USER_DAILY_LIMIT", DEFAULT_FREE_DAILY_LIMIT),
            free_monthly_limit=_int_env("FREE_USER_MONTHLY_LIMIT", DEFAULT_FREE_MONTHLY_LIMIT),
            model_cost_overrides=_parse_cost_overrides(os.getenv("MODEL_COST_OVERRIDES", "")),
            database_url=os.getenv("DATABASE_URL") or None,
        )


# Global settings instance
_settings: Optional[QuotaSettings] = None


def get_settings() -> QuotaSettings:
    """Get the process settings, reading the environment on first use."""
    global _settings
    if _settings is None:
        _settings = QuotaSettings.from_env()
    return _settings


def set_settings(settings: Optional[QuotaSettings]) -> None:
    """Replace the process settings (None forces a re-read)."""
    global _settings
    _settings = settings
