"""Tests for messaging.py"""

from unittest.mock import AsyncMock

import pytest

from timeline_comments.core.admission import WriteGate
from timeline_comments.core.annotation_store import AnnotationStore
from timeline_comments.core.errors import (
    ActorBanned,
    ChannelInvalidated,
    ModerationRejected,
    RateLimited,
    RemoteUnavailable,
)
from timeline_comments.core.messaging import (
    ChannelRequest,
    ChannelResponse,
    LocalChannel,
    MessageKind,
    MessageRouter,
)
from timeline_comments.core.moderation import ModerationEngine
from timeline_comments.core.rate_limiter import RateLimit, RateLimiter


@pytest.fixture
def store(remote, db):
    return AnnotationStore(remote, db)


@pytest.fixture
def router(store, session):
    return MessageRouter(store, session)


@pytest.fixture
def gated_router(store, session):
    gate = WriteGate(ModerationEngine(), RateLimiter({
        "comment": RateLimit(max=1, window_ms=60_000),
        "like": RateLimit(max=1, window_ms=60_000),
        "reply": RateLimit(max=1, window_ms=60_000),
    }))
    return MessageRouter(store, session, gate=gate)


def save_request(text="Great scene", timestamp=42, key="hulu_abc"):
    return ChannelRequest(
        kind=MessageKind.SAVE_COMMENT,
        payload={"videoId": key, "text": text, "timestamp": timestamp, "platform": "hulu"},
    )


class TestChannelRequest:
    def test_inline_payload(self):
        request = ChannelRequest.from_dict({"type": "LOAD_COMMENTS", "videoId": "hulu_abc"})
        assert request.kind == MessageKind.LOAD_COMMENTS
        assert request.payload == {"videoId": "hulu_abc"}

    def test_nested_payload(self):
        request = ChannelRequest.from_dict({"type": "LIKE_COMMENT", "data": {"commentId": "c1"}})
        assert request.kind == MessageKind.LIKE_COMMENT
        assert request.payload == {"commentId": "c1"}

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            ChannelRequest.from_dict({"type": "DELETE_EVERYTHING"})


class TestChannelResponse:
    def test_ok_to_dict(self):
        assert ChannelResponse.ok(liked=True).to_dict() == {"success": True, "liked": True}

    def test_fail_to_dict(self):
        response = ChannelResponse.from_error(ActorBanned())
        assert response.to_dict() == {
            "success": False,
            "error": "Your account has been suspended.",
            "code": "ActorBanned",
        }

    def test_from_dict(self):
        response = ChannelResponse.from_dict({"success": True, "comments": []})
        assert response.success is True
        assert response.data == {"comments": []}

    def test_raise_for_error_moderation(self):
        response = ChannelResponse.from_error(ModerationRejected(["URLs not allowed", "Text too short"]))
        with pytest.raises(ModerationRejected) as exc_info:
            ChannelResponse.from_dict(response.to_dict()).raise_for_error()
        assert exc_info.value.violations == ["URLs not allowed", "Text too short"]
        assert str(exc_info.value) == "URLs not allowed. Text too short"

    @pytest.mark.parametrize("error", [ActorBanned(), RateLimited(), RemoteUnavailable("down")])
    def test_raise_for_error_preserves_kind(self, error):
        with pytest.raises(type(error), match=str(error)):
            ChannelResponse.from_error(error).raise_for_error()

    def test_unknown_code_is_remote_unavailable(self):
        with pytest.raises(RemoteUnavailable, match="weird"):
            ChannelResponse.fail("weird").raise_for_error()

    def test_success_does_not_raise(self):
        ChannelResponse.ok().raise_for_error()


class TestMessageRouter:
    @pytest.mark.asyncio
    async def test_save_and_load(self, router, fake_remote):
        saved = await router.dispatch(save_request())
        assert saved.success is True
        comment = saved.data["comment"]
        assert comment["timestamp"] == 42
        assert comment["videoId"] == "hulu_abc"
        assert fake_remote.get(f"comments/hulu_abc/{comment['id']}")["text"] == "Great scene"

        loaded = await router.dispatch(
            ChannelRequest(kind=MessageKind.LOAD_COMMENTS, payload={"videoId": "hulu_abc"})
        )
        assert [c["id"] for c in loaded.data["comments"]] == [comment["id"]]

    @pytest.mark.asyncio
    async def test_like_reply_report(self, router, fake_remote):
        comment_id = (await router.dispatch(save_request())).data["comment"]["id"]

        liked = await router.dispatch(ChannelRequest(MessageKind.LIKE_COMMENT, {"commentId": comment_id}))
        assert liked.data == {"liked": True}

        reply = await router.dispatch(
            ChannelRequest(MessageKind.ADD_REPLY, {"commentId": comment_id, "text": "agreed"})
        )
        assert reply.data["reply"]["parentId"] == comment_id

        report = await router.dispatch(
            ChannelRequest(MessageKind.REPORT_COMMENT, {"commentId": comment_id, "videoId": "hulu_abc"})
        )
        assert report.success is True
        assert fake_remote.get(f"reports/{comment_id}")

    @pytest.mark.asyncio
    async def test_release_evicts_memory_only(self, router, store, db):
        await router.dispatch(save_request())
        assert store.loaded_keys == ["hulu_abc"]

        response = await router.dispatch(
            ChannelRequest(MessageKind.RELEASE_COMMENTS, {"videoId": "hulu_abc"})
        )

        assert response.success is True
        assert store.loaded_keys == []
        assert len(db.get_snapshot("hulu_abc")) == 1

    @pytest.mark.asyncio
    async def test_store_error_becomes_failure(self, router, fake_remote):
        fake_remote.set("users/actor-1", {"banned": True})
        response = await router.dispatch(save_request())
        assert response.success is False
        assert response.code == "ActorBanned"
        assert response.error == "Your account has been suspended."

    @pytest.mark.asyncio
    async def test_invalid_payload(self, router):
        response = await router.dispatch(ChannelRequest(MessageKind.SAVE_COMMENT, {"text": "x"}))
        assert response.success is False
        assert response.error.startswith("Invalid request")

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported(self, session):
        store = AsyncMock()
        store.load.side_effect = RuntimeError("boom")
        router = MessageRouter(store, session)
        response = await router.dispatch(ChannelRequest(MessageKind.LOAD_COMMENTS, {"videoId": "k"}))
        assert response.success is False
        assert response.error == "boom"

    @pytest.mark.asyncio
    async def test_ungated_router_skips_moderation(self, router):
        response = await router.dispatch(save_request(text="check https://x.io"))
        assert response.success is True


class TestGatedRouter:
    """Requests from an untrusted transport are moderated and throttled."""

    @pytest.mark.asyncio
    async def test_moderation_rejected_before_remote(self, gated_router, fake_remote):
        response = await gated_router.dispatch(save_request(text="a" * 15))
        assert response.success is False
        assert response.code == "ModerationRejected"
        assert response.data["violations"] == ["Excessive repeated characters"]
        assert fake_remote.requests == []

    @pytest.mark.asyncio
    async def test_rate_limited(self, gated_router, fake_remote):
        assert (await gated_router.dispatch(save_request())).success is True
        posts = len(fake_remote.requests_for("POST"))

        response = await gated_router.dispatch(save_request(text="Another one"))

        assert response.success is False
        assert response.code == "RateLimited"
        assert len(fake_remote.requests_for("POST")) == posts

    @pytest.mark.asyncio
    async def test_reply_moderated(self, gated_router):
        response = await gated_router.dispatch(
            ChannelRequest(MessageKind.ADD_REPLY, {"commentId": "c1", "text": "k"})
        )
        assert response.code == "ModerationRejected"

    @pytest.mark.asyncio
    async def test_like_throttled(self, gated_router):
        first = await gated_router.dispatch(ChannelRequest(MessageKind.LIKE_COMMENT, {"commentId": "c1"}))
        second = await gated_router.dispatch(ChannelRequest(MessageKind.LIKE_COMMENT, {"commentId": "c1"}))
        assert first.success is True
        assert second.code == "RateLimited"


class TestLocalChannel:
    @pytest.mark.asyncio
    async def test_send(self, router):
        channel = LocalChannel(router)
        response = await channel.send(MessageKind.LOAD_COMMENTS, {"videoId": "hulu_abc"})
        assert response.success is True
        assert response.data == {"comments": []}

    @pytest.mark.asyncio
    async def test_invalidated_channel_raises(self, router):
        channel = LocalChannel(router)
        channel.invalidate()
        assert channel.invalidated is True
        with pytest.raises(ChannelInvalidated, match="Extension context invalidated"):
            await channel.send(MessageKind.LOAD_COMMENTS, {"videoId": "hulu_abc"})

    @pytest.mark.asyncio
    async def test_invalidated_during_send(self, session):
        channel = None

        async def load(content_key, session=None):
            channel.invalidate()
            return []

        store = AsyncMock()
        store.load.side_effect = load
        channel = LocalChannel(MessageRouter(store, session))

        with pytest.raises(ChannelInvalidated):
            await channel.send(MessageKind.LOAD_COMMENTS, {"videoId": "hulu_abc"})
