"""
tokenmeter - API Request Models

Pydantic models for request validation.
Responses are plain dicts built from the engine's `to_dict` views.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ..db.models import UsageType


# ============================================================
# Metering
# ============================================================

class CheckQuotaRequest(BaseModel):
    """
    Pre-flight admission check.

    Either give a token estimate directly or the prompt text to estimate
    from. When both are present the number wins; when neither is, the check
    asks whether the user is already over quota.
    """
    estimated_tokens: Optional[int] = Field(default=None, ge=0)
    text: Optional[str] = Field(default=None, description="Text to estimate tokens from")


class RecordUsageRequest(BaseModel):
    """Completed metered action to record."""
    tokens: int = Field(..., gt=0, description="Tokens consumed")
    model: str = Field(..., min_length=1, max_length=255)
    usage_type: UsageType = UsageType.CHAT
    request_id: Optional[str] = Field(default=None, max_length=255)

    @field_validator("model")
    @classmethod
    def validate_model(cls, v):
        if not v.strip():
            raise ValueError("model cannot be blank")
        return v


# ============================================================
# Administration
# ============================================================

class UpdateQuotaRequest(BaseModel):
    """Per-user limit override. -1 means unlimited."""
    daily_limit: Optional[int] = Field(default=None, ge=-1)
    monthly_limit: Optional[int] = Field(default=None, ge=-1)

    @model_validator(mode="after")
    def validate_any_limit(self):
        if self.daily_limit is None and self.monthly_limit is None:
            raise ValueError("at least one of daily_limit or monthly_limit is required")
        return self
