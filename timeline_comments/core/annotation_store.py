"""Per-content-key annotation cache backed by the remote store.

Provides:
- AnnotationStore: load/append/like/reply/report with cache fallback on reads
- ReconciliationPoll: periodic re-fetch that replaces the list on count drift
"""

from __future__ import annotations

import asyncio
import bisect
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from timeline_comments.core.errors import (
    ActorBanned,
    ChannelInvalidated,
    RemoteUnavailable,
    TimelineError,
)
from timeline_comments.providers.content_types import Annotation, Reply, sort_by_position

if TYPE_CHECKING:
    from timeline_comments.core.session import SessionContext
    from timeline_comments.core.storage import DB
    from timeline_comments.providers.remote_store import RemoteStoreClient

logger = logging.getLogger(__name__)

MAX_POSITION = 86400


def _now_ms() -> int:
    return int(time.time() * 1000)


def _position_key(annotation: Annotation) -> tuple[int, int]:
    return (annotation.position, annotation.created_at)


class AnnotationStore:
    """Owns the in-memory annotation lists, one per content key.

    Reads prefer availability over freshness: a failed remote fetch returns
    the last snapshot. Writes never pretend to succeed: a failed persist
    raises and leaves the cache untouched.
    """

    def __init__(self, remote: "RemoteStoreClient", db: "DB | None" = None) -> None:
        self._remote = remote
        self._db = db
        self._cache: dict[str, list[Annotation]] = {}

    # ==================== Reads ====================

    def cached(self, content_key: str) -> list[Annotation]:
        """Last known list for a key: memory first, then the local snapshot."""
        if content_key in self._cache:
            return list(self._cache[content_key])
        if self._db is not None:
            snapshot = self._db.get_snapshot(content_key)
            if snapshot is not None:
                self._cache[content_key] = snapshot
                return list(snapshot)
        return []

    @property
    def loaded_keys(self) -> list[str]:
        """Content keys currently held in memory."""
        return sorted(self._cache)

    def evict(self, content_key: str) -> None:
        """Drop the in-memory list. The local snapshot stays as fallback."""
        if self._cache.pop(content_key, None) is not None:
            logger.debug(f"Evicted {content_key} from memory")

    async def load(self, content_key: str, session: "SessionContext | None" = None) -> list[Annotation]:
        """Fetch annotations with their replies and likes, sorted by position.

        Never raises for remote failures; falls back to :meth:`cached`.
        """
        try:
            annotations = await self._fetch(content_key, session)
        except RemoteUnavailable as e:
            logger.warning(f"Loading {content_key} failed, serving cached snapshot: {e}")
            return self.cached(content_key)

        self._replace(content_key, annotations)
        logger.debug(f"Loaded {len(annotations)} comments for {content_key}")
        return list(annotations)

    async def _fetch(self, content_key: str, session: "SessionContext | None") -> list[Annotation]:
        auth = session.token if session else None
        data = await self._remote.get(f"comments/{content_key}", auth=auth)
        if not data or not isinstance(data, dict):
            return []

        annotations = [
            Annotation.from_remote(annotation_id, content_key, body)
            for annotation_id, body in data.items()
            if isinstance(body, dict)
        ]
        await asyncio.gather(*(self._fetch_details(a, session) for a in annotations))
        return sort_by_position(annotations)

    async def _fetch_details(self, annotation: Annotation, session: "SessionContext | None") -> None:
        auth = session.token if session else None
        replies_data, likes_data = await asyncio.gather(
            self._remote.get(f"replies/{annotation.id}", auth=auth),
            self._remote.get(f"likes/{annotation.id}", auth=auth),
        )

        if isinstance(replies_data, dict):
            replies = [
                Reply.from_remote(reply_id, annotation.id, body)
                for reply_id, body in replies_data.items()
                if isinstance(body, dict)
            ]
            annotation.replies = sorted(replies, key=lambda r: r.created_at)

        if isinstance(likes_data, dict):
            annotation.like_count = len(likes_data)
            annotation.liked_by_current_actor = bool(
                session and likes_data.get(session.actor_id) is True
            )

    # ==================== Writes ====================

    async def _profile(self, session: "SessionContext") -> dict[str, Any]:
        """Fetch the actor profile and refuse banned actors."""
        profile = await self._remote.get(f"users/{session.actor_id}", auth=session.token)
        profile = profile if isinstance(profile, dict) else {}
        if profile.get("banned"):
            raise ActorBanned()
        return profile

    async def append(
        self,
        content_key: str,
        text: str,
        position: int,
        session: "SessionContext",
        platform: str | None = None,
    ) -> Annotation:
        """Persist a new annotation and insert it into the cache.

        The caller has already run moderation and admission control.

        Raises:
            ActorBanned: If the actor's profile is flagged.
            RemoteUnavailable: If the persist fails; nothing is cached.
            ValueError: If ``position`` is out of range.
        """
        position = int(position)
        if not 0 <= position < MAX_POSITION:
            raise ValueError(f"Position out of range: {position}")

        profile = await self._profile(session)
        annotation = Annotation(
            id="",
            content_key=content_key,
            text=text,
            position=position,
            author_id=session.actor_id,
            author_name=profile.get("displayName") or "Anonymous",
            created_at=_now_ms(),
            platform=platform,
        )
        annotation.id = await self._remote.post(
            f"comments/{content_key}", annotation.remote_body(), auth=session.token
        )

        await self._bump_comment_count(session, profile)
        self._insert(content_key, annotation)
        logger.info(f"Saved comment {annotation.id} on {content_key} at {position}s")
        return annotation

    async def _bump_comment_count(self, session: "SessionContext", profile: dict[str, Any]) -> None:
        count = int(profile.get("commentCount") or 0) + 1
        try:
            await self._remote.put(
                f"users/{session.actor_id}/commentCount", count, auth=session.token
            )
        except RemoteUnavailable as e:
            logger.warning(f"Could not update comment count for {session.actor_id}: {e}")

    async def reply(self, annotation_id: str, text: str, session: "SessionContext") -> Reply:
        """Persist a reply; attach it to the cached parent when present."""
        profile = await self._profile(session)
        reply = Reply(
            id="",
            parent_annotation_id=annotation_id,
            text=text,
            author_id=session.actor_id,
            author_name=profile.get("displayName") or "Anonymous",
            created_at=_now_ms(),
        )
        body = {
            "text": reply.text,
            "authorId": reply.author_id,
            "authorName": reply.author_name,
            "createdAt": reply.created_at,
        }
        reply.id = await self._remote.post(f"replies/{annotation_id}", body, auth=session.token)

        found = self._find(annotation_id)
        if found:
            content_key, parent = found
            parent.replies.append(reply)
            self._persist(content_key)
        return reply

    async def like(self, annotation_id: str, session: "SessionContext") -> bool:
        """Toggle the actor's like. Returns the new liked state."""
        path = f"likes/{annotation_id}/{session.actor_id}"
        already_liked = await self._remote.get(path, auth=session.token)

        if already_liked:
            await self._remote.delete(path, auth=session.token)
            liked = False
        else:
            await self._remote.put(path, True, auth=session.token)
            liked = True

        found = self._find(annotation_id)
        if found:
            content_key, annotation = found
            if annotation.liked_by_current_actor != liked:
                annotation.like_count = max(annotation.like_count + (1 if liked else -1), 0)
                annotation.liked_by_current_actor = liked
                self._persist(content_key)
        return liked

    async def report(self, annotation_id: str, content_key: str, session: "SessionContext") -> bool:
        """File a moderation report for an annotation."""
        report = {
            "commentId": annotation_id,
            "videoId": content_key,
            "reportedBy": session.actor_id,
            "reportedAt": _now_ms(),
            "status": "pending",
        }
        await self._remote.post(f"reports/{annotation_id}", report, auth=session.token)
        logger.info(f"Reported comment {annotation_id} on {content_key}")
        return True

    # ==================== Cache helpers ====================

    def _replace(self, content_key: str, annotations: list[Annotation]) -> None:
        self._cache[content_key] = list(annotations)
        self._persist(content_key)

    def _insert(self, content_key: str, annotation: Annotation) -> None:
        annotations = self.cached(content_key)
        bisect.insort(annotations, annotation, key=_position_key)
        self._replace(content_key, annotations)

    def _find(self, annotation_id: str) -> tuple[str, Annotation] | None:
        for content_key, annotations in self._cache.items():
            for annotation in annotations:
                if annotation.id == annotation_id:
                    return content_key, annotation
        return None

    def _persist(self, content_key: str) -> None:
        if self._db is not None:
            self._db.save_snapshot(content_key, self._cache.get(content_key, []))


class ReconciliationPoll:
    """Periodic re-fetch for one content key at a time.

    The fetched list replaces the current one only when the counts differ.
    Every ``start``/``stop`` bumps the generation; results carrying an older
    generation are discarded.
    """

    def __init__(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError("Poll interval must be positive")
        self.interval = interval
        self._generation = 0
        self._task: asyncio.Task[None] | None = None
        self._content_key: str | None = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def content_key(self) -> str | None:
        return self._content_key

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(
        self,
        content_key: str,
        fetch: Callable[[str], Awaitable[list[Annotation]]],
        current_count: Callable[[], int],
        on_drift: Callable[[str, list[Annotation]], None],
        on_invalidated: Callable[[ChannelInvalidated], None] | None = None,
    ) -> None:
        """Begin polling ``content_key``, replacing any previous poll."""
        self.stop()
        self._content_key = content_key
        self._task = asyncio.create_task(
            self._run(content_key, self._generation, fetch, current_count, on_drift, on_invalidated)
        )

    def stop(self) -> asyncio.Task[None] | None:
        """Cancel the poll. Safe to call any number of times. Returns the cancelled task, if any."""
        self._generation += 1
        self._content_key = None
        task, self._task = self._task, None
        if task is None or task.done():
            return None
        task.cancel()
        return task

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    async def _run(
        self,
        content_key: str,
        generation: int,
        fetch: Callable[[str], Awaitable[list[Annotation]]],
        current_count: Callable[[], int],
        on_drift: Callable[[str, list[Annotation]], None],
        on_invalidated: Callable[[ChannelInvalidated], None] | None,
    ) -> None:
        while self.is_current(generation):
            await asyncio.sleep(self.interval)
            try:
                fetched = await fetch(content_key)
            except ChannelInvalidated as e:
                logger.info(f"Host channel invalidated, stopping poll for {content_key}")
                if self.is_current(generation):
                    self._task = None
                    if on_invalidated is not None:
                        on_invalidated(e)
                return
            except TimelineError as e:
                logger.warning(f"Poll for {content_key} failed: {e}")
                continue

            if not self.is_current(generation):
                logger.debug(f"Discarding superseded poll result for {content_key}")
                return

            if len(fetched) != current_count():
                logger.info(f"Comment count changed for {content_key}: {len(fetched)}")
                on_drift(content_key, fetched)
