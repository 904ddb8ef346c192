"""Synchronization orchestrator: the page-side driver.

Wires identity resolution into annotation loads and the reconciliation poll,
reacts to navigation, and exposes the write path
(moderation → admission control → host channel → store).

State machine::

    UNRESOLVED → RESOLVING        on navigation
    RESOLVING  → ACTIVE(key)      when the resolver settles a key
    ACTIVE     → RESOLVING        on navigation (poll torn down, list cleared)
    any        → STALE            when the host channel is invalidated (terminal)
"""

from __future__ import annotations

import asyncio
import bisect
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from timeline_comments.core.annotation_store import ReconciliationPoll
from timeline_comments.core.errors import (
    ChannelInvalidated,
    PositionUnavailable,
    ProvisionalKeyError,
    TimelineError,
)
from timeline_comments.core.identity import (
    IdentityResolver,
    NavigationWatcher,
    PageProbe,
    PlaybackEvent,
    ResolvedKey,
)
from timeline_comments.core.messaging import ChannelResponse, HostChannel, MessageKind
from timeline_comments.providers.content_types import Annotation, Reply

if TYPE_CHECKING:
    from timeline_comments.core.admission import WriteGate
    from timeline_comments.core.session import SessionContext

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    ACTIVE = "active"
    STALE = "stale"


class SyncOrchestrator:
    """Keeps the displayed annotation list converged with the remote store.

    Owns three timers (navigation watch, resolution retries, reconciliation
    poll); :meth:`close` stops all of them and may be called repeatedly.
    Every key activation bumps ``generation``; loads that complete for an
    older generation are discarded.
    """

    def __init__(
        self,
        probe: PageProbe,
        channel: HostChannel,
        gate: "WriteGate",
        session: "SessionContext",
        *,
        navigation_interval: float | None = None,
        resolve_interval: float | None = None,
        resolve_max_attempts: int | None = None,
        poll_interval: float | None = None,
        enabled: bool = True,
        on_change: Callable[[list[Annotation]], None] | None = None,
    ) -> None:
        settings = session.settings
        self._probe = probe
        self._channel = channel
        self._gate = gate
        self._session = session
        self.enabled = enabled
        self.on_change = on_change

        self._resolver = IdentityResolver(
            probe,
            interval=resolve_interval if resolve_interval is not None else settings.resolve_interval,
            max_attempts=(
                resolve_max_attempts if resolve_max_attempts is not None else settings.resolve_max_attempts
            ),
            on_resolved=self._on_resolved,
        )
        self._watcher = NavigationWatcher(
            probe,
            self._on_navigate,
            interval=navigation_interval if navigation_interval is not None else settings.navigation_interval,
        )
        self._poll = ReconciliationPoll(
            poll_interval if poll_interval is not None else settings.poll_interval
        )

        self.state = SyncState.UNRESOLVED
        self.content_key: ResolvedKey | None = None
        self.annotations: list[Annotation] = []
        self.generation = 0
        self.reload_notice = False
        self._load_task: asyncio.Task[None] | None = None

    @property
    def resolver(self) -> IdentityResolver:
        return self._resolver

    @property
    def poll(self) -> ReconciliationPoll:
        return self._poll

    async def __aenter__(self) -> "SyncOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Begin watching navigation. No-op when the feature is disabled."""
        if not self.enabled:
            logger.info("Timeline comments disabled; not starting")
            return
        if self.state == SyncState.STALE:
            return
        self._watcher.start()
        await self._watcher.check()

    async def close(self) -> None:
        """Stop every timer and pending load, and wait for them to finish. Idempotent."""
        pending = self._stop_timers()
        task, self._load_task = self._load_task, None
        if task is not None and not task.done():
            task.cancel()
            pending.append(task)

        current = asyncio.current_task()
        pending = [t for t in pending if t is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _stop_timers(self) -> list[asyncio.Task[None]]:
        """Cancel the timers. Returns the cancelled tasks."""
        tasks = [self._watcher.stop(), self._resolver.stop(), self._poll.stop()]
        return [t for t in tasks if t is not None]

    def playback_event(self, event: PlaybackEvent) -> None:
        """Forward a player lifecycle event to the resolver."""
        if self.state == SyncState.STALE:
            return
        self._resolver.on_playback_event(event)

    # ==================== Transitions ====================

    async def _on_navigate(self, previous: str | None, url: str) -> None:
        if self.state == SyncState.STALE:
            return
        previous_key = self.content_key.key if self.content_key else None
        self.state = SyncState.RESOLVING
        self.generation += 1
        generation = self.generation
        self._poll.stop()
        self._cancel_load()
        self.content_key = None
        self._set_annotations([])
        self._resolver.begin_epoch()
        if previous_key is not None:
            await self._release(previous_key)
            if generation != self.generation:
                return
        self._resolver.start()

    def _on_resolved(self, resolved: ResolvedKey) -> None:
        if self.state == SyncState.STALE:
            return
        current = self.content_key
        if current is not None and current.key == resolved.key and self.state == SyncState.ACTIVE:
            # Same item, now confirmed: keep the loaded list
            self.content_key = resolved
            return

        superseded = current.key if current is not None and current.key != resolved.key else None
        logger.info(f"Activating {resolved.key} (final={resolved.final})")
        self.generation += 1
        self.state = SyncState.ACTIVE
        self.content_key = resolved
        self._poll.stop()
        self._cancel_load()
        self._set_annotations([])
        self._load_task = asyncio.create_task(
            self._activate(resolved.key, self.generation, superseded)
        )

    async def _activate(self, content_key: str, generation: int, superseded: str | None = None) -> None:
        if superseded is not None:
            await self._release(superseded)
            if generation != self.generation:
                return
        try:
            annotations = await self._load(content_key)
        except ChannelInvalidated:
            return
        except TimelineError as e:
            logger.warning(f"Initial load for {content_key} failed: {e}")
            annotations = None

        if generation != self.generation:
            logger.debug(f"Discarding load for superseded key {content_key}")
            return
        if annotations is not None:
            self._set_annotations(annotations)
            logger.info(f"Loaded {len(annotations)} comments for {content_key}")

        self._poll.start(
            content_key,
            fetch=self._load,
            current_count=lambda: len(self.annotations),
            on_drift=self._on_drift,
            on_invalidated=self._go_stale,
        )

    def _on_drift(self, content_key: str, annotations: list[Annotation]) -> None:
        if self.state != SyncState.ACTIVE or not self.content_key or self.content_key.key != content_key:
            return
        self._set_annotations(annotations)

    def _go_stale(self, error: ChannelInvalidated) -> None:
        if self.state == SyncState.STALE:
            return
        logger.info("Host channel invalidated - please refresh the page")
        self.state = SyncState.STALE
        self.reload_notice = True
        self.generation += 1
        self._stop_timers()
        self._cancel_load()

    def _cancel_load(self) -> None:
        task, self._load_task = self._load_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _set_annotations(self, annotations: list[Annotation]) -> None:
        self.annotations = list(annotations)
        if self.on_change is not None:
            self.on_change(list(self.annotations))

    # ==================== Channel ====================

    async def _request(self, kind: MessageKind, payload: dict[str, Any]) -> ChannelResponse:
        if self.state == SyncState.STALE:
            raise ChannelInvalidated()
        try:
            return await self._channel.send(kind, payload)
        except ChannelInvalidated as e:
            self._go_stale(e)
            raise

    def _raise_for_error(self, response: ChannelResponse) -> None:
        try:
            response.raise_for_error()
        except ChannelInvalidated as e:
            self._go_stale(e)
            raise

    async def _load(self, content_key: str) -> list[Annotation]:
        response = await self._request(MessageKind.LOAD_COMMENTS, {"videoId": content_key})
        self._raise_for_error(response)
        return [Annotation.from_dict(c) for c in response.data.get("comments", [])]

    async def _release(self, content_key: str) -> None:
        """Tell the host the page no longer shows ``content_key``. Best effort."""
        try:
            response = await self._request(MessageKind.RELEASE_COMMENTS, {"videoId": content_key})
            self._raise_for_error(response)
        except ChannelInvalidated:
            return
        except TimelineError as e:
            logger.debug(f"Could not release {content_key}: {e}")

    async def refresh(self) -> list[Annotation]:
        """Reload the active key now. Superseded results are discarded."""
        key = self._writable_key(require_final=False)
        generation = self.generation
        annotations = await self._load(key.key)
        if generation == self.generation:
            self._set_annotations(annotations)
        return list(self.annotations)

    # ==================== Write path ====================

    def _writable_key(self, require_final: bool = True) -> ResolvedKey:
        if self.state == SyncState.STALE:
            raise ChannelInvalidated()
        key = self.content_key
        if self.state != SyncState.ACTIVE or key is None:
            raise ProvisionalKeyError(key.key if key else None)
        if require_final and not key.final:
            raise ProvisionalKeyError(key.key)
        return key

    def current_position(self) -> int | None:
        return self._resolver.current_position()

    async def submit_comment(self, text: str) -> Annotation:
        """Pin ``text`` at the current playback position.

        Raises:
            ModerationRejected: With the specific violation reasons.
            RateLimited: When the actor posted too often.
            PositionUnavailable: When no position source answers.
            ProvisionalKeyError: Before the content key is final.
            ActorBanned, RemoteUnavailable: From the store, verbatim.
            ChannelInvalidated: Once the page context is stale.
        """
        key = self._writable_key()
        self._gate.check_text(text)

        position = self._resolver.current_position()
        if position is None:
            raise PositionUnavailable()

        self._gate.admit(self._session.actor_id, "comment")
        generation = self.generation
        response = await self._request(
            MessageKind.SAVE_COMMENT,
            {
                "videoId": key.key,
                "text": text,
                "timestamp": position,
                "platform": key.key.split("_", 1)[0],
            },
        )
        self._raise_for_error(response)
        annotation = Annotation.from_dict(response.data["comment"])

        if generation == self.generation:
            annotations = list(self.annotations)
            bisect.insort(annotations, annotation, key=lambda a: (a.position, a.created_at))
            self._set_annotations(annotations)
        logger.info(f"Comment pinned at {position}s on {key.key}")
        return annotation

    async def submit_reply(self, annotation_id: str, text: str) -> Reply:
        self._writable_key()
        self._gate.check_text(text)
        self._gate.admit(self._session.actor_id, "reply")
        response = await self._request(
            MessageKind.ADD_REPLY, {"commentId": annotation_id, "text": text}
        )
        self._raise_for_error(response)
        reply = Reply.from_dict(response.data["reply"])

        for annotation in self.annotations:
            if annotation.id == annotation_id:
                annotation.replies.append(reply)
                self._set_annotations(self.annotations)
                break
        return reply

    async def toggle_like(self, annotation_id: str) -> bool:
        """Like or unlike, then reload so counts reflect the remote state.

        The returned state is the persisted one; the reload is skipped when
        the page moved to another key while the like was in flight.
        """
        key = self._writable_key(require_final=False)
        self._gate.admit(self._session.actor_id, "like")
        generation = self.generation
        response = await self._request(MessageKind.LIKE_COMMENT, {"commentId": annotation_id})
        self._raise_for_error(response)
        liked = bool(response.data.get("liked"))

        if generation == self.generation and self.state == SyncState.ACTIVE:
            try:
                await self.refresh()
            except TimelineError as e:
                logger.warning(f"Reload after like on {key.key} failed: {e}")
        return liked

    async def report(self, annotation_id: str) -> bool:
        key = self._writable_key(require_final=False)
        response = await self._request(
            MessageKind.REPORT_COMMENT, {"commentId": annotation_id, "videoId": key.key}
        )
        self._raise_for_error(response)
        return True
