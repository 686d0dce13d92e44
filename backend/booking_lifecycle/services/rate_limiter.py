"""
Per-actor edit rate limiting.

Fixed window per actor: the first edit opens a window of
rate_limit_window_seconds; at most max_edits_per_hour edits commit inside it.
check() peeks (used while validating and previewing); hit() atomically checks
and consumes one slot (used only on the commit path).
"""

from booking_lifecycle.core.clock import Clock, utc_now
from booking_lifecycle.core.logging import get_logger
from booking_lifecycle.core.metrics import rate_limit_rejections
from booking_lifecycle.repositories.interfaces import RateLimitDecision, RateLimitStore
from booking_lifecycle.schemas.course import CourseEditRules

logger = get_logger(__name__)


def rate_limit_message(decision: RateLimitDecision) -> str:
    minutes = max(1, -(-decision.retry_after_seconds // 60))
    return f"Edit limit of {decision.limit} per hour reached; try again in {minutes} minutes"


class EditRateLimiter:
    def __init__(self, store: RateLimitStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

    @staticmethod
    def _key(actor_id: str) -> str:
        return f"edit:{actor_id}"

    async def check(self, actor_id: str, rules: CourseEditRules) -> RateLimitDecision:
        return await self.store.peek(
            self._key(actor_id), rules.max_edits_per_hour, rules.rate_limit_window_seconds, self.clock()
        )

    async def hit(self, actor_id: str, rules: CourseEditRules) -> RateLimitDecision:
        decision = await self.store.hit(
            self._key(actor_id), rules.max_edits_per_hour, rules.rate_limit_window_seconds, self.clock()
        )
        if not decision.allowed:
            rate_limit_rejections.inc()
            logger.warning(
                "edit_rate_limited",
                actor_id=actor_id,
                limit=decision.limit,
                retry_after_seconds=decision.retry_after_seconds,
            )
        return decision
