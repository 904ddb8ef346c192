"""Write gate: moderation verdict first, then admission control."""

from __future__ import annotations

import logging

from timeline_comments.core.errors import ModerationRejected, RateLimited
from timeline_comments.core.moderation import ModerationEngine, ModerationVerdict
from timeline_comments.core.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

THROTTLE_MESSAGES = {
    "comment": "Rate limit exceeded. Please wait before posting again.",
}


class WriteGate:
    """Every text write passes moderation and the rate limiter before any remote call."""

    def __init__(self, moderation: ModerationEngine, rate_limiter: RateLimiter) -> None:
        self.moderation = moderation
        self.rate_limiter = rate_limiter

    def check_text(self, text: str) -> ModerationVerdict:
        """Raise ModerationRejected with the violation reasons unless clean."""
        verdict = self.moderation.evaluate(text)
        if not verdict.clean:
            logger.info(f"Moderation blocked text: {'; '.join(verdict.violations)}")
            raise ModerationRejected(list(verdict.violations))
        return verdict

    def admit(self, actor_id: str, action: str, now: int | None = None) -> None:
        """Raise RateLimited unless the actor has room for another ``action``."""
        if not self.rate_limiter.try_admit(actor_id, action, now):
            raise RateLimited(THROTTLE_MESSAGES.get(action, "Rate limit exceeded."))

    def check(self, actor_id: str, action: str, text: str | None = None) -> ModerationVerdict | None:
        """Moderate ``text`` (when given), then admit. Rejected text costs no admission."""
        verdict = self.check_text(text) if text is not None else None
        self.admit(actor_id, action)
        return verdict
