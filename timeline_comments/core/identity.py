"""Video identity resolution: which item is playing, and where.

Platforms expose identity and position through several unreliable signals
that appear asynchronously after navigation. Each signal is read by an
independent strategy; strategies are tried in declared order and the first
usable value wins. A strategy that finds nothing (or breaks) counts as
"signal absent", never as an error.

Provides:
- PageSnapshot / PageProbe: what the page exposes at one moment
- SignalSource / PositionSource strategies and the per-platform profiles
- IdentityResolver: epoch-scoped resolution with lock and bounded retry
- NavigationWatcher: fixed-interval URL polling
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Protocol
from urllib.parse import parse_qs, urlparse

from timeline_comments.core.errors import SignalAbsent

logger = logging.getLogger(__name__)

MAX_POSITION = 86400  # Seconds; positions must lie in [0, MAX_POSITION)

TIME_TEXT_RE = re.compile(r"(\d{1,2}):(\d{2})(?::(\d{2}))?")
HMS_RE = re.compile(r"(\d{1,2}):(\d{2}):(\d{2})")
NUMERIC_RE = re.compile(r"^\d+(\.\d+)?$")


class Platform(str, Enum):
    NETFLIX = "netflix"
    DISNEYPLUS = "disneyplus"
    HULU = "hulu"


class PlaybackEvent(str, Enum):
    """Player lifecycle events that correlate with signal availability."""

    MEDIA_READY = "media_ready"
    PLAYBACK_STARTED = "playback_started"


def detect_platform(url: str) -> Platform | None:
    hostname = (urlparse(url).hostname or "").lower()
    for platform in Platform:
        if platform.value in hostname:
            return platform
    return None


# ==================== Page snapshots ====================


@dataclass(frozen=True)
class MediaElement:
    """State of one media element on the page."""

    src: str | None = None
    current_src: str | None = None
    current_time: float = 0.0
    ready_state: int = 0
    paused: bool = True

    @property
    def source_url(self) -> str | None:
        return self.current_src or self.src


@dataclass(frozen=True)
class SliderState:
    """Raw value/max of a range control, as the page reports them."""

    value: Any
    max: Any


@dataclass(frozen=True)
class PageSnapshot:
    """Everything the resolver may look at, captured at one moment."""

    url: str
    media: tuple[MediaElement, ...] = ()
    page_state: Mapping[str, Any] = field(default_factory=dict)
    data_attributes: Mapping[str, str] = field(default_factory=dict)
    time_display: str | None = None
    control_texts: tuple[str, ...] = ()
    progress_slider: SliderState | None = None
    progress_properties: Mapping[str, Any] = field(default_factory=dict)
    progress_attributes: Mapping[str, str] = field(default_factory=dict)

    @property
    def platform(self) -> Platform | None:
        return detect_platform(self.url)

    def active_media(self) -> MediaElement | None:
        """The element actually playing, else a ready one, else the first."""
        if len(self.media) > 1:
            for element in self.media:
                if element.ready_state > 0 and not element.paused:
                    return element
            for element in self.media:
                if element.ready_state > 0:
                    return element
        return self.media[0] if self.media else None


class PageProbe(Protocol):
    """Captures a PageSnapshot of the current page."""

    def snapshot(self) -> PageSnapshot: ...


# ==================== Identity signal sources ====================


class SignalSource(ABC):
    """Extracts an item identifier from a snapshot, or None when absent."""

    name: str = "signal"

    @abstractmethod
    def extract(self, snapshot: PageSnapshot) -> str | None: ...


class MediaSourceQuerySource(SignalSource):
    """``movieid=`` query parameter of the media source URL."""

    name = "media_src_query"
    _pattern = re.compile(r"[?&]movieid=(\d+)")

    def extract(self, snapshot: PageSnapshot) -> str | None:
        media = snapshot.active_media()
        if not media or not media.source_url:
            return None
        match = self._pattern.search(media.source_url)
        return match.group(1) if match else None


class MediaSourcePathSource(SignalSource):
    """``/{showId}/{itemId}?`` path segment of the media source URL."""

    name = "media_src_path"
    _pattern = re.compile(r"/(\d+)/(\d+)\?")

    def extract(self, snapshot: PageSnapshot) -> str | None:
        media = snapshot.active_media()
        if not media or not media.source_url:
            return None
        match = self._pattern.search(media.source_url)
        return match.group(2) if match else None


class UrlContextSource(SignalSource):
    """``Video:{id}`` inside a tracking-context query parameter."""

    name = "url_context"
    _pattern = re.compile(r"Video(?::|%3A)(\d+)", re.IGNORECASE)

    def __init__(self, param: str = "tctx") -> None:
        self.param = param

    def extract(self, snapshot: PageSnapshot) -> str | None:
        values = parse_qs(urlparse(snapshot.url).query).get(self.param)
        if not values:
            return None
        match = self._pattern.search(values[0])
        return match.group(1) if match else None


class PageStateSource(SignalSource):
    """A value nested in the page's embedded application state."""

    name = "page_state"

    def __init__(self, path: tuple[str, ...]) -> None:
        self.path = path

    def extract(self, snapshot: PageSnapshot) -> str | None:
        node: Any = snapshot.page_state
        for key in self.path:
            if not isinstance(node, Mapping) or key not in node:
                return None
            node = node[key]
        return str(node) if node not in (None, "") else None


class DomAttributeSource(SignalSource):
    """A data attribute on the player container."""

    name = "dom_attribute"

    def __init__(self, attribute: str) -> None:
        self.attribute = attribute

    def extract(self, snapshot: PageSnapshot) -> str | None:
        return snapshot.data_attributes.get(self.attribute) or None


# ==================== Position sources ====================


def parse_time_text(text: str) -> int | None:
    """``H:MM:SS`` or ``M:SS`` → seconds."""
    match = TIME_TEXT_RE.search(text)
    if not match:
        return None
    if match.group(3) is not None:
        hours, minutes, seconds = int(match.group(1)), int(match.group(2)), int(match.group(3))
    else:
        hours, minutes, seconds = 0, int(match.group(1)), int(match.group(2))
    return hours * 3600 + minutes * 60 + seconds


def _as_float(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


class PositionSource(ABC):
    """Reads the playback position in seconds from a snapshot, or None."""

    name: str = "position"

    @abstractmethod
    def read(self, snapshot: PageSnapshot) -> float | None: ...


class SliderPositionSource(PositionSource):
    """The player's progress slider, trusted only with a plausible max."""

    name = "progress_slider"

    def read(self, snapshot: PageSnapshot) -> float | None:
        slider = snapshot.progress_slider
        if slider is None:
            return None
        value, maximum = _as_float(slider.value), _as_float(slider.max)
        if value is None or maximum is None:
            return None
        if 100 < maximum < MAX_POSITION and value > 0:
            return value
        return None


class ElementPropertySource(PositionSource):
    """Numeric properties exposed by the progress element."""

    name = "progress_property"
    PROPERTIES = (
        "value", "currentTime", "current", "position",
        "currentValue", "time", "playbackTime", "seconds",
    )

    def read(self, snapshot: PageSnapshot) -> float | None:
        for prop in self.PROPERTIES:
            value = _as_float(snapshot.progress_properties.get(prop))
            if value is not None and 0 < value < MAX_POSITION:
                return value
        return None


class ElementAttributeSource(PositionSource):
    """Numeric attributes on the progress element (small values are ignored)."""

    name = "progress_attribute"

    def read(self, snapshot: PageSnapshot) -> float | None:
        for raw in snapshot.progress_attributes.values():
            if raw and NUMERIC_RE.match(raw):
                value = float(raw)
                if 10 < value < MAX_POSITION:
                    return value
        return None


class ControlTimeTextSource(PositionSource):
    """Largest time-like text in the controls area."""

    name = "control_text"

    def read(self, snapshot: PageSnapshot) -> float | None:
        times = []
        for text in snapshot.control_texts:
            text = text.strip()
            if len(text) >= 30:
                continue
            seconds = parse_time_text(text)
            if seconds is not None and 0 < seconds < MAX_POSITION:
                times.append(seconds)
        return float(max(times)) if times else None


class TimeDisplaySource(PositionSource):
    """The platform's visible time display."""

    name = "time_display"

    def __init__(self, require_hours: bool = False) -> None:
        self.require_hours = require_hours

    def read(self, snapshot: PageSnapshot) -> float | None:
        text = snapshot.time_display
        if not text:
            return None
        if self.require_hours:
            match = HMS_RE.search(text)
            if not match:
                return None
            h, m, s = (int(g) for g in match.groups())
            return float(h * 3600 + m * 60 + s)
        match = re.search(r"(\d{1,2}):(\d{2})", text)
        if not match:
            return None
        return float(int(match.group(1)) * 60 + int(match.group(2)))


class MediaClockSource(PositionSource):
    """The media element's own clock. May drift from what the platform shows."""

    name = "media_clock"

    def read(self, snapshot: PageSnapshot) -> float | None:
        media = snapshot.active_media()
        if media is None or media.current_time <= 0:
            return None
        return media.current_time


# ==================== Platform profiles ====================


@dataclass(frozen=True)
class PlatformProfile:
    """How one platform encodes identity in URLs and where it shows position."""

    platform: Platform
    url_patterns: tuple[re.Pattern[str], ...]
    url_key_is_final: bool
    item_sources: tuple[SignalSource, ...] = ()
    position_sources: tuple[PositionSource, ...] = ()
    item_key_prefix: str = ""


PROFILES: dict[Platform, PlatformProfile] = {
    Platform.NETFLIX: PlatformProfile(
        platform=Platform.NETFLIX,
        url_patterns=(re.compile(r"/watch/(\d+)"),),
        url_key_is_final=False,
        item_sources=(
            MediaSourceQuerySource(),
            MediaSourcePathSource(),
            UrlContextSource("tctx"),
            PageStateSource(("reactContext", "models", "playerModel", "videoId")),
            DomAttributeSource("data-videoid"),
        ),
        position_sources=(TimeDisplaySource(require_hours=True),),
        item_key_prefix="netflix_ep",
    ),
    Platform.DISNEYPLUS: PlatformProfile(
        platform=Platform.DISNEYPLUS,
        url_patterns=(re.compile(r"/video/([^?/#]+)"), re.compile(r"/play/([^?/#]+)")),
        url_key_is_final=True,
        position_sources=(
            SliderPositionSource(),
            ElementPropertySource(),
            ElementAttributeSource(),
            ControlTimeTextSource(),
        ),
    ),
    Platform.HULU: PlatformProfile(
        platform=Platform.HULU,
        url_patterns=(re.compile(r"/watch/([^?/#]+)"),),
        url_key_is_final=True,
        position_sources=(TimeDisplaySource(require_hours=False),),
    ),
}

FALLBACK_POSITION_SOURCES: tuple[PositionSource, ...] = (MediaClockSource(),)


@dataclass(frozen=True)
class ResolvedKey:
    """A content key plus how much we trust it."""

    key: str
    final: bool
    source: str

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "final": self.final, "source": self.source}


def _usable(value: str | None) -> bool:
    return bool(value) and "null" not in value and "undefined" not in value


# ==================== Resolver ====================


class IdentityResolver:
    """Resolves the ContentKey for the current navigation epoch.

    ``begin_epoch()`` is called on every navigation; it clears the lock and
    cancels any retry still running for the previous epoch. Within an epoch,
    resolution is retried every ``interval`` seconds up to ``max_attempts``
    times and re-triggered by playback events, until a final key is locked.
    If retries run out with only a provisional key, that key is reported as
    settled (still provisional) and later events may still upgrade it.
    """

    def __init__(
        self,
        probe: PageProbe,
        *,
        interval: float = 0.5,
        max_attempts: int = 10,
        profiles: Mapping[Platform, PlatformProfile] | None = None,
        on_resolved: Callable[[ResolvedKey], None] | None = None,
    ) -> None:
        self._probe = probe
        self.interval = interval
        self.max_attempts = max_attempts
        self._profiles = dict(profiles if profiles is not None else PROFILES)
        self.on_resolved = on_resolved
        self._epoch = 0
        self._current: ResolvedKey | None = None
        self._locked = False
        self._settled = False
        self._task: asyncio.Task[None] | None = None

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def current(self) -> ResolvedKey | None:
        return self._current

    @property
    def locked(self) -> bool:
        return self._locked

    @property
    def retrying(self) -> bool:
        return self._task is not None and not self._task.done()

    def _snapshot(self) -> PageSnapshot | None:
        try:
            return self._probe.snapshot()
        except Exception as e:
            logger.debug(f"Page snapshot unavailable: {e}")
            return None

    # ---------- pure derivation ----------

    def resolve(self, snapshot: PageSnapshot | None = None) -> ResolvedKey | None:
        """Derive the best key the snapshot supports. No epoch state involved."""
        snapshot = snapshot if snapshot is not None else self._snapshot()
        if snapshot is None:
            return None
        profile = self._profiles.get(snapshot.platform) if snapshot.platform else None
        if profile is None:
            return None

        url_id = None
        for pattern in profile.url_patterns:
            match = pattern.search(snapshot.url)
            if match:
                url_id = match.group(1)
                break
        if not _usable(url_id):
            logger.debug(f"No item id in URL {snapshot.url}")
            return None

        url_key = f"{profile.platform.value}_{url_id}"
        if profile.url_key_is_final:
            return ResolvedKey(url_key, final=True, source="url")

        for source in profile.item_sources:
            item_id = self._try(source, snapshot)
            if not _usable(item_id):
                continue
            if item_id == url_id:
                # The URL already names the item (e.g. a film)
                return ResolvedKey(url_key, final=True, source=source.name)
            return ResolvedKey(f"{profile.item_key_prefix}_{item_id}", final=True, source=source.name)

        return ResolvedKey(url_key, final=False, source="url")

    @staticmethod
    def _try(source: SignalSource, snapshot: PageSnapshot) -> str | None:
        try:
            value = source.extract(snapshot)
        except SignalAbsent:
            return None
        except Exception as e:
            logger.debug(f"Signal source {source.name} failed: {e}")
            return None
        return str(value) if value is not None else None

    def current_position(self, snapshot: PageSnapshot | None = None) -> int | None:
        """Authoritative playback position in whole seconds, or None.

        Always re-derived from a fresh snapshot; never cached.
        """
        snapshot = snapshot if snapshot is not None else self._snapshot()
        if snapshot is None:
            return None
        profile = self._profiles.get(snapshot.platform) if snapshot.platform else None
        sources = (profile.position_sources if profile else ()) + FALLBACK_POSITION_SOURCES

        for source in sources:
            try:
                value = source.read(snapshot)
            except Exception as e:
                logger.debug(f"Position source {source.name} failed: {e}")
                continue
            if value is None or not 0 <= value < MAX_POSITION:
                continue
            if isinstance(source, MediaClockSource):
                logger.warning("Using media element clock as position (may be inaccurate)")
            return int(math.floor(value))
        return None

    # ---------- epoch-scoped resolution ----------

    def begin_epoch(self) -> int:
        """Start a new navigation epoch: reset lock and cancel in-flight retries."""
        self._cancel_retry()
        self._epoch += 1
        self._current = None
        self._locked = False
        self._settled = False
        return self._epoch

    def attempt(self) -> ResolvedKey | None:
        """One resolution attempt for the current epoch. Suppressed once locked."""
        if self._locked:
            return self._current
        resolved = self.resolve()
        if resolved is None:
            return self._current
        if resolved.final:
            self._lock(resolved)
        else:
            self._current = resolved
        return self._current

    def start(self) -> None:
        """Attempt now; keep retrying on a bounded schedule until locked."""
        self.attempt()
        if not self._locked and not self.retrying:
            self._task = asyncio.create_task(self._retry(self._epoch))

    def on_playback_event(self, event: PlaybackEvent) -> None:
        """Playback lifecycle hook: signals often appear right after these."""
        if self._locked:
            return
        logger.debug(f"Playback event {event.value}, retrying resolution")
        self.start()

    def stop(self) -> asyncio.Task[None] | None:
        """Cancel retries. Safe to call any number of times. Returns the cancelled task."""
        return self._cancel_retry()

    def _cancel_retry(self) -> asyncio.Task[None] | None:
        task, self._task = self._task, None
        if task is None or task.done():
            return None
        task.cancel()
        return task

    def _lock(self, resolved: ResolvedKey) -> None:
        self._current = resolved
        self._locked = True
        logger.info(f"Content key finalized: {resolved.key} (via {resolved.source})")
        self._notify(resolved)

    def _notify(self, resolved: ResolvedKey) -> None:
        if self.on_resolved is not None:
            self.on_resolved(resolved)

    async def _retry(self, epoch: int) -> None:
        for _ in range(self.max_attempts):
            await asyncio.sleep(self.interval)
            if epoch != self._epoch or self._locked:
                return
            self.attempt()
            if self._locked:
                return

        if epoch != self._epoch or self._locked or self._settled:
            return
        self._settled = True
        if self._current is not None:
            logger.info(
                f"Could not finalize content key after {self.max_attempts} attempts; "
                f"using provisional {self._current.key}"
            )
            self._notify(self._current)
        else:
            logger.info(f"Could not determine content key after {self.max_attempts} attempts")


# ==================== Navigation watch ====================


class NavigationWatcher:
    """Polls the page URL at a fixed interval and reports changes.

    Platforms are single-page apps that do not reliably announce navigation.
    """

    def __init__(
        self,
        probe: PageProbe,
        on_navigate: Callable[[str | None, str], Awaitable[None] | None],
        interval: float = 1.0,
    ) -> None:
        self._probe = probe
        self._on_navigate = on_navigate
        self.interval = interval
        self._last_url: str | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def last_url(self) -> str | None:
        return self._last_url

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, initial_url: str | None = None) -> None:
        self.stop()
        self._last_url = initial_url
        self._task = asyncio.create_task(self._run())

    def stop(self) -> asyncio.Task[None] | None:
        """Safe to call any number of times. Returns the cancelled task, if any."""
        task, self._task = self._task, None
        if task is None or task.done():
            return None
        task.cancel()
        return task

    async def check(self) -> bool:
        """Compare the current URL with the last seen one. True if it changed."""
        try:
            url = self._probe.snapshot().url
        except Exception as e:
            logger.debug(f"URL unavailable: {e}")
            return False
        if url == self._last_url:
            return False
        previous, self._last_url = self._last_url, url
        logger.info(f"URL changed from {previous} to {url}")
        result = self._on_navigate(previous, url)
        if asyncio.iscoroutine(result):
            await result
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.check()


class SnapshotProbe:
    """PageProbe fed by page glue: the latest pushed snapshot wins."""

    def __init__(self, snapshot: PageSnapshot | None = None) -> None:
        self._snapshot = snapshot

    def update(self, snapshot: PageSnapshot) -> None:
        self._snapshot = snapshot

    def snapshot(self) -> PageSnapshot:
        if self._snapshot is None:
            raise SignalAbsent("No page snapshot yet")
        return self._snapshot
