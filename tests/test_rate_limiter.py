"""Tests for rate_limiter.py and admission.py"""

import pytest

from timeline_comments.core.admission import WriteGate
from timeline_comments.core.errors import ModerationRejected, RateLimited
from timeline_comments.core.moderation import ModerationEngine
from timeline_comments.core.rate_limiter import DEFAULT_LIMITS, RateLimit, RateLimiter


@pytest.fixture
def limiter():
    return RateLimiter({"comment": RateLimit(max=2, window_ms=1000)})


class TestRateLimiter:
    """Tests for the sliding window counter."""

    def test_default_limits(self):
        limiter = RateLimiter()
        assert limiter.limits == DEFAULT_LIMITS
        assert limiter.limits["comment"] == RateLimit(10, 60_000)
        assert limiter.limits["like"] == RateLimit(30, 60_000)
        assert limiter.limits["reply"] == RateLimit(20, 60_000)

    def test_window_slides(self, limiter):
        assert limiter.try_admit("u1", "comment", now=0) is True
        assert limiter.try_admit("u1", "comment", now=100) is True
        assert limiter.try_admit("u1", "comment", now=200) is False
        assert limiter.try_admit("u1", "comment", now=1101) is True

    def test_rejection_is_not_recorded(self, limiter):
        limiter.try_admit("u1", "comment", now=0)
        limiter.try_admit("u1", "comment", now=500)
        for t in (600, 700, 800):
            assert limiter.try_admit("u1", "comment", now=t) is False
        # Only the t=0 entry has expired; rejected attempts left no trace
        assert limiter.try_admit("u1", "comment", now=1000) is True
        assert limiter.try_admit("u1", "comment", now=1001) is False

    def test_actors_are_independent(self, limiter):
        limiter.try_admit("u1", "comment", now=0)
        limiter.try_admit("u1", "comment", now=1)
        assert limiter.try_admit("u1", "comment", now=2) is False
        assert limiter.try_admit("u2", "comment", now=2) is True

    def test_actions_are_independent(self):
        limiter = RateLimiter({
            "comment": RateLimit(max=1, window_ms=1000),
            "like": RateLimit(max=1, window_ms=1000),
        })
        assert limiter.try_admit("u1", "comment", now=0) is True
        assert limiter.try_admit("u1", "comment", now=1) is False
        assert limiter.try_admit("u1", "like", now=1) is True

    def test_unknown_action(self, limiter):
        with pytest.raises(ValueError, match="Unknown action"):
            limiter.try_admit("u1", "share", now=0)

    def test_remaining(self, limiter):
        assert limiter.remaining("u1", "comment", now=0) == 2
        limiter.try_admit("u1", "comment", now=0)
        assert limiter.remaining("u1", "comment", now=10) == 1
        assert limiter.remaining("u1", "comment", now=1000) == 2

    def test_reset_one_actor(self, limiter):
        limiter.try_admit("u1", "comment", now=0)
        limiter.try_admit("u1", "comment", now=1)
        limiter.try_admit("u2", "comment", now=1)
        limiter.reset("u1")
        assert limiter.remaining("u1", "comment", now=2) == 2
        assert limiter.remaining("u2", "comment", now=2) == 1

    def test_reset_all(self, limiter):
        limiter.try_admit("u1", "comment", now=0)
        limiter.reset()
        assert limiter.remaining("u1", "comment", now=1) == 2

    def test_from_settings(self):
        limiter = RateLimiter.from_settings({"comment": (3, 5000)})
        assert limiter.limits == {"comment": RateLimit(3, 5000)}


class TestWriteGate:
    """Moderation first, admission second."""

    @pytest.fixture
    def gate(self, limiter):
        return WriteGate(ModerationEngine(), limiter)

    def test_clean_text_admitted(self, gate):
        verdict = gate.check("u1", "comment", "Nice shot")
        assert verdict.clean is True

    def test_rejected_text_costs_no_admission(self, gate, limiter):
        with pytest.raises(ModerationRejected) as exc_info:
            gate.check("u1", "comment", "a" * 15)
        assert exc_info.value.violations == ["Excessive repeated characters"]
        assert limiter.remaining("u1", "comment") == 2

    def test_throttled(self, gate):
        gate.admit("u1", "comment", now=0)
        gate.admit("u1", "comment", now=1)
        with pytest.raises(RateLimited, match="Please wait before posting again"):
            gate.admit("u1", "comment", now=2)
