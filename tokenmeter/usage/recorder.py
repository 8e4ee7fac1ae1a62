"""
tokenmeter - Usage Recorder

Persists one usage event per completed metered action and adds its tokens
to the user's quota counters.

Failing to persist usage is fatal: the error propagates to the metering
call site as RecordingFailedError, with enough context logged to replay
the event by hand.
"""

import uuid
from typing import Optional, Union

from ..core.errors import InvalidRequestError, RecordingFailedError
from ..db.models import UsageEvent, UsageType
from ..db.store import UsageStore
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics
from ..observability.tracing import trace_quota_operation
from .pricing import CostCalculator
from .scheduler import ResetScheduler

logger = get_logger(__name__)


def parse_usage_type(value: Union[str, UsageType]) -> UsageType:
    try:
        return UsageType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in UsageType)
        raise InvalidRequestError(
            f"usage_type must be one of: {allowed}",
            param="usage_type",
        )


class UsageRecorder:
    """Appends usage events and increments counters atomically."""

    def __init__(
        self,
        store: UsageStore,
        scheduler: ResetScheduler,
        calculator: CostCalculator,
    ):
        self.store = store
        self.scheduler = scheduler
        self.calculator = calculator

    async def record(
        self,
        user_id: str,
        tokens: int,
        model_name: str,
        usage_type: Union[str, UsageType] = UsageType.CHAT,
        request_id: Optional[str] = None,
    ) -> UsageEvent:
        """
        Record actual token consumption for a user.

        Args:
            user_id: User that consumed the tokens
            tokens: Actual token count (> 0)
            model_name: Model that served the request
            usage_type: chat, search, image or video
            request_id: Caller's request id; generated when absent

        Returns:
            The stored UsageEvent

        Raises:
            InvalidRequestError: tokens <= 0 or unknown usage_type
            RecordingFailedError: the event or counters could not be persisted
        """
        if isinstance(tokens, bool) or not isinstance(tokens, int) or tokens <= 0:
            raise InvalidRequestError("tokens must be a positive integer", param="tokens")
        usage_type = parse_usage_type(usage_type)
        request_id = request_id or str(uuid.uuid4())
        cost = self.calculator.cost(tokens, model_name)

        with trace_quota_operation(
            "quota.record",
            user_id=user_id,
            tokens=tokens,
            model=model_name,
            usage_type=usage_type.value,
            request_id=request_id,
        ):
            now = self.scheduler.now()
            try:
                await self.scheduler.load(user_id, now)
                event = await self.store.record_usage(
                    UsageEvent(
                        user_id=user_id,
                        tokens_used=tokens,
                        model_name=model_name,
                        usage_type=usage_type,
                        request_id=request_id,
                        cost=cost,
                        created_at=now,
                    )
                )
            except Exception as e:
                get_metrics().record_recording_failure(usage_type.value)
                logger.exception(
                    "Failed to record usage",
                    user_id=user_id,
                    tokens=tokens,
                    model_name=model_name,
                    usage_type=usage_type.value,
                    request_id=request_id,
                    error=str(e),
                )
                raise RecordingFailedError(
                    user_id=user_id,
                    tokens=tokens,
                    model_name=model_name,
                    usage_type=usage_type.value,
                    request_id=request_id,
                    reason=str(e),
                ) from e

        get_metrics().record_usage(
            model=model_name,
            usage_type=usage_type.value,
            tokens=tokens,
            cost_usd=float(cost),
        )
        logger.info(
            "Usage recorded",
            user_id=user_id,
            tokens=tokens,
            model_name=model_name,
            usage_type=usage_type.value,
            request_id=request_id,
            cost=str(cost),
        )
        return event
