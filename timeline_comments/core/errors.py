"""Error taxonomy shared by the resolver, store, router and orchestrator."""

from __future__ import annotations


class TimelineError(Exception):
    """Base exception for timeline-comments errors."""


class SignalAbsent(TimelineError):
    """A resolution source has no data yet. Never surfaced to users."""


class RemoteUnavailable(TimelineError):
    """The remote store could not be reached or answered with a server error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteAuthError(RemoteUnavailable):
    """The remote store rejected the credential."""


class ChannelInvalidated(TimelineError):
    """The host messaging channel is gone. Fatal for the current page context."""

    def __init__(self, message: str = "Extension context invalidated"):
        super().__init__(message)


class ModerationRejected(TimelineError):
    """Text failed moderation. Carries the specific violation reasons."""

    def __init__(self, violations: list[str]):
        self.violations = list(violations)
        super().__init__(". ".join(self.violations))


class RateLimited(TimelineError):
    """Admission control rejected the action."""

    def __init__(self, message: str = "Rate limit exceeded."):
        super().__init__(message)


class ActorBanned(TimelineError):
    """The actor is suspended and may not write."""

    def __init__(self, message: str = "Your account has been suspended."):
        super().__init__(message)


class PositionUnavailable(TimelineError):
    """No playback position source produced a usable value."""

    def __init__(self, message: str = "Could not get current timestamp. Please try again."):
        super().__init__(message)


class ProvisionalKeyError(TimelineError):
    """A write was attempted before the content key was finalized."""

    def __init__(self, content_key: str | None):
        self.content_key = content_key
        super().__init__(f"Content key not finalized: {content_key}")


def error_code(error: TimelineError) -> str:
    """Stable name used to carry an error across the host channel."""
    return type(error).__name__


def error_from_code(code: str | None, message: str, violations: list[str] | None = None) -> TimelineError:
    """Rebuild the error a channel response describes. Unknown codes map to RemoteUnavailable."""
    if code == "ModerationRejected":
        return ModerationRejected(violations or [message])
    if code == "ProvisionalKeyError":
        return ProvisionalKeyError(None)
    simple: dict[str, type[TimelineError]] = {
        "ActorBanned": ActorBanned,
        "RateLimited": RateLimited,
        "PositionUnavailable": PositionUnavailable,
        "ChannelInvalidated": ChannelInvalidated,
    }
    if code in simple:
        return simple[code](message)
    if code == "RemoteAuthError":
        return RemoteAuthError(message)
    return RemoteUnavailable(message)
