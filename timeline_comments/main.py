from __future__ import annotations

import logging
from typing import Any

from fastapi import Body, FastAPI, HTTPException

from timeline_comments.core.messaging import ChannelRequest, ChannelResponse, MessageKind
from timeline_comments.core.runtime import get_runtime, init_runtime, runtime_initialized, set_runtime

logger = logging.getLogger(__name__)

app = FastAPI(title="timeline-comments")


@app.on_event("startup")
async def _startup() -> None:
    if not runtime_initialized():
        await init_runtime()


@app.on_event("shutdown")
async def _shutdown() -> None:
    if runtime_initialized():
        await get_runtime().close()
        set_runtime(None)


@app.get("/health")
def health():
    rt = get_runtime()
    return {"status": "ok", "actor_id": rt.session.actor_id, "stats": rt.db.get_stats()}


@app.post("/api/messages")
async def api_messages(message: dict[str, Any] = Body(...)):
    """Host channel over HTTP.

    Accepts ``{"type": KIND, ...payload}`` and answers with the same
    ``{"success": ...}`` envelope the in-process channel uses. Writes are
    moderated and rate limited here since the caller is untrusted.
    """
    try:
        request = ChannelRequest.from_dict(message)
    except (KeyError, ValueError):
        raise HTTPException(status_code=400, detail=f"Unknown message type: {message.get('type')!r}")

    response = await get_runtime().router(gated=True).dispatch(request)
    return response.to_dict()


@app.get("/api/comments/{content_key}")
async def api_comments(content_key: str):
    """Comments for a content key, ordered by playback position."""
    rt = get_runtime()
    response = await rt.router(gated=True).dispatch(
        ChannelRequest(kind=MessageKind.LOAD_COMMENTS, payload={"videoId": content_key})
    )
    return response.to_dict()


@app.get("/api/comments/{content_key}/cached")
def api_comments_cached(content_key: str):
    """Last known list without touching the remote store."""
    rt = get_runtime()
    comments = rt.store.cached(content_key)
    return ChannelResponse.ok(comments=[c.to_dict() for c in comments]).to_dict()


@app.get("/api/settings/enabled")
def api_get_enabled():
    return {"enabled": get_runtime().db.is_enabled()}


@app.post("/api/settings/enabled")
def api_set_enabled(enabled: bool = True):
    """Toggle the feature. Pages pick the value up on their next start."""
    db = get_runtime().db
    db.set_enabled(enabled)
    logger.info(f"Timeline comments {'enabled' if enabled else 'disabled'}")
    return {"success": True, "enabled": db.is_enabled()}


@app.post("/api/moderation/check")
def api_moderation_check(text: str = Body(..., embed=True)):
    """Dry-run moderation. Does not consume rate limit budget."""
    verdict = get_runtime().gate.moderation.evaluate(text)
    return verdict.to_dict()


@app.get("/api/rate-limits/{action}")
def api_rate_limit_remaining(action: str):
    rt = get_runtime()
    try:
        remaining = rt.gate.rate_limiter.remaining(rt.session.actor_id, action)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    limit = rt.gate.rate_limiter.limits[action]
    return {"action": action, "remaining": remaining, "max": limit.max, "window_ms": limit.window_ms}
