"""Host messaging channel: request kinds, responses and the store-side router.

Every response is ``{"success": bool, ...payload}`` or
``{"success": False, "error": message, "code": ErrorName}``. Channel invalidation is not a
response: the transport raises :class:`ChannelInvalidated` instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from timeline_comments.core.errors import (
    ChannelInvalidated,
    ModerationRejected,
    TimelineError,
    error_code,
    error_from_code,
)

if TYPE_CHECKING:
    from timeline_comments.core.admission import WriteGate
    from timeline_comments.core.annotation_store import AnnotationStore
    from timeline_comments.core.session import SessionContext

logger = logging.getLogger(__name__)


class MessageKind(str, Enum):
    """Request kinds understood by the router."""

    SAVE_COMMENT = "SAVE_COMMENT"
    LOAD_COMMENTS = "LOAD_COMMENTS"
    LIKE_COMMENT = "LIKE_COMMENT"
    ADD_REPLY = "ADD_REPLY"
    REPORT_COMMENT = "REPORT_COMMENT"
    RELEASE_COMMENTS = "RELEASE_COMMENTS"


@dataclass
class ChannelRequest:
    kind: MessageKind
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChannelRequest:
        """Accept ``{"type": KIND, ...}`` with the payload inline or under ``data``."""
        kind = MessageKind(data["type"])
        payload = {k: v for k, v in data.items() if k not in ("type", "data")}
        if isinstance(data.get("data"), dict):
            payload.update(data["data"])
        return cls(kind=kind, payload=payload)


@dataclass
class ChannelResponse:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, **self.data}
        return {"success": False, "error": self.error, "code": self.code, **self.data}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChannelResponse:
        payload = {k: v for k, v in data.items() if k not in ("success", "error", "code")}
        return cls(
            success=bool(data.get("success")),
            data=payload,
            error=data.get("error"),
            code=data.get("code"),
        )

    @classmethod
    def ok(cls, **data: Any) -> ChannelResponse:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str | None = None, **data: Any) -> ChannelResponse:
        return cls(success=False, error=error, code=code, data=data)

    @classmethod
    def from_error(cls, error: TimelineError) -> ChannelResponse:
        if isinstance(error, ModerationRejected):
            return cls.fail(str(error), error_code(error), violations=error.violations)
        return cls.fail(str(error), error_code(error))

    def raise_for_error(self) -> None:
        """Re-raise the error a failed response describes."""
        if not self.success:
            raise error_from_code(
                self.code,
                self.error or "Request failed",
                self.data.get("violations"),
            )


class HostChannel(Protocol):
    async def send(self, kind: MessageKind, payload: dict[str, Any]) -> ChannelResponse: ...


class MessageRouter:
    """Maps channel requests onto AnnotationStore operations.

    When a ``gate`` is configured (requests arriving from an untrusted
    transport) text writes and likes are moderated and rate limited here.
    """

    def __init__(
        self,
        store: "AnnotationStore",
        session: "SessionContext",
        gate: "WriteGate | None" = None,
    ) -> None:
        self._store = store
        self._session = session
        self._gate = gate
        self._handlers = {
            MessageKind.SAVE_COMMENT: self._save_comment,
            MessageKind.LOAD_COMMENTS: self._load_comments,
            MessageKind.LIKE_COMMENT: self._like_comment,
            MessageKind.ADD_REPLY: self._add_reply,
            MessageKind.REPORT_COMMENT: self._report_comment,
            MessageKind.RELEASE_COMMENTS: self._release_comments,
        }

    async def dispatch(self, request: ChannelRequest) -> ChannelResponse:
        handler = self._handlers[request.kind]
        try:
            return await handler(request.payload)
        except TimelineError as e:
            return ChannelResponse.from_error(e)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Invalid {request.kind.value} payload: {e}")
            return ChannelResponse.fail(f"Invalid request: {e}")
        except Exception as e:
            logger.exception(f"Error handling {request.kind.value}")
            return ChannelResponse.fail(str(e))

    async def _save_comment(self, payload: dict[str, Any]) -> ChannelResponse:
        text = str(payload["text"])
        if self._gate is not None:
            self._gate.check(self._session.actor_id, "comment", text)
        comment = await self._store.append(
            str(payload["videoId"]),
            text,
            int(payload["timestamp"]),
            self._session,
            platform=payload.get("platform"),
        )
        return ChannelResponse.ok(comment=comment.to_dict())

    async def _load_comments(self, payload: dict[str, Any]) -> ChannelResponse:
        comments = await self._store.load(str(payload["videoId"]), self._session)
        return ChannelResponse.ok(comments=[c.to_dict() for c in comments])

    async def _like_comment(self, payload: dict[str, Any]) -> ChannelResponse:
        if self._gate is not None:
            self._gate.check(self._session.actor_id, "like")
        liked = await self._store.like(str(payload["commentId"]), self._session)
        return ChannelResponse.ok(liked=liked)

    async def _add_reply(self, payload: dict[str, Any]) -> ChannelResponse:
        text = str(payload["text"])
        if self._gate is not None:
            self._gate.check(self._session.actor_id, "reply", text)
        reply = await self._store.reply(str(payload["commentId"]), text, self._session)
        return ChannelResponse.ok(reply=reply.to_dict())

    async def _report_comment(self, payload: dict[str, Any]) -> ChannelResponse:
        await self._store.report(str(payload["commentId"]), str(payload["videoId"]), self._session)
        return ChannelResponse.ok()

    async def _release_comments(self, payload: dict[str, Any]) -> ChannelResponse:
        self._store.evict(str(payload["videoId"]))
        return ChannelResponse.ok()


class LocalChannel:
    """In-process transport to a MessageRouter.

    Once invalidated every send raises ChannelInvalidated, including sends
    that were in flight when invalidation happened.
    """

    def __init__(self, router: MessageRouter) -> None:
        self._router = router
        self._invalidated = False

    @property
    def invalidated(self) -> bool:
        return self._invalidated

    def invalidate(self) -> None:
        self._invalidated = True

    async def send(self, kind: MessageKind, payload: dict[str, Any]) -> ChannelResponse:
        if self._invalidated:
            raise ChannelInvalidated()
        response = await self._router.dispatch(ChannelRequest(kind=kind, payload=dict(payload)))
        if self._invalidated:
            raise ChannelInvalidated()
        return response
