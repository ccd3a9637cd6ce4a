"""Per-session playback metrics aggregation.

Playback samples are thresholded into :class:`PendingUpdate` entries and a
background task drains them every ``interval`` seconds into the durable
``video_metrics`` row of the (user, video) pair. Each drained update is a
read-modify-write guarded by the row's version counter.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from recipe_feed_server.core.config import settings
from recipe_feed_server.core.errors import DataInconsistencyError
from recipe_feed_server.db.engagement_store import EngagementStore, VideoMetric

if TYPE_CHECKING:  # pragma: no cover
    from recipe_feed_server.recommendations.scoring import ScoringEngine

_log = logging.getLogger(__name__)

# completed updates get this many extra ticks after a failed write
COMPLETION_RETRY_BUDGET = 1


class PlaybackState(str, Enum):
    UNSTARTED = 'unstarted'
    PLAYING = 'playing'
    PAUSED = 'paused'
    COMPLETED = 'completed'


@dataclass(slots=True)
class PlaybackStatus:
    """One playback-status sample from the player."""

    is_loaded: bool
    position_ms: int = 0
    duration_ms: int | None = None
    is_playing: bool = False


@dataclass(slots=True)
class PendingUpdate:
    video_id: str
    watched_seconds: int
    last_position: int
    completed: bool
    watch_percent: float
    # monotonic per-aggregator sample sequence
    captured_at: int
    attempts: int = 0


@dataclass(slots=True)
class _VideoSession:
    state: PlaybackState = PlaybackState.UNSTARTED
    last_enqueued_position: int | None = None
    completion_logged: bool = False
    viewed: bool = False


def _watch_fields(status: PlaybackStatus, completion_ratio: float) -> tuple[int, int, bool, float]:
    position = max(0, int(status.position_ms or 0))
    duration = max(0, int(status.duration_ms or 0))
    watched_seconds = position // 1000
    if duration:
        completed = position >= completion_ratio * duration
        watch_percent = min(100.0, position / duration * 100)
    else:
        completed = False
        watch_percent = 0.0
    return position, watched_seconds, completed, watch_percent


def merge_metric(
    current: VideoMetric | None,
    update: PendingUpdate,
    session_replays: int,
    *,
    stale: bool = False,
) -> dict[str, Any]:
    """Fields for the next durable metric row.

    The first row takes the sample's watch percent as its average. Later rows
    fold it in weighted by the accumulated replay count. A ``stale`` update
    (captured before one that is already durable) keeps the stored position
    and only contributes its completion flag and watch percent.
    """
    if current is None:
        return {
            'watched_seconds': update.watched_seconds,
            'last_position': update.last_position,
            'completed': update.completed,
            'replay_count': session_replays,
            'average_watch_percent': update.watch_percent,
        }
    replay_count = current.replay_count + session_replays
    average = (current.average_watch_percent * replay_count + update.watch_percent) / (replay_count + 1)
    fields: dict[str, Any] = {
        'watched_seconds': update.watched_seconds,
        'last_position': update.last_position,
        'completed': update.completed,
        'replay_count': replay_count,
        'average_watch_percent': min(100.0, max(0.0, average)),
    }
    if stale:
        fields['watched_seconds'] = current.watched_seconds
        fields['last_position'] = current.last_position
        fields['completed'] = current.completed or update.completed
    return fields


class MetricsAggregator:
    """Batches one user's playback samples into durable metric upserts.

    Samples are accepted with :meth:`track`; :meth:`start` runs a ticking task
    that calls :meth:`flush` every ``interval`` seconds, and :meth:`stop`
    cancels the ticker and performs one final flush.
    """

    def __init__(
        self,
        user_id: str,
        store: EngagementStore,
        *,
        scoring: ScoringEngine | None = None,
        interval: float | None = None,
        position_delta_ms: int | None = None,
        completion_ratio: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.user_id = user_id
        self.store = store
        self.scoring = scoring
        self.interval = interval if interval is not None else settings.metrics_flush_interval_seconds
        self.position_delta_ms = position_delta_ms if position_delta_ms is not None else settings.metrics_position_delta_ms
        self.completion_ratio = completion_ratio if completion_ratio is not None else settings.metrics_completion_ratio

        self._queue: list[PendingUpdate] = []
        self._replays: dict[str, int] = {}
        self._videos: dict[str, _VideoSession] = {}
        # highest captured_at made durable, per video
        self._flushed_seq: dict[str, int] = {}
        self._seq = itertools.count(1)
        self._flush_lock = asyncio.Lock()
        self._timer: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._clock = clock
        self.last_activity = clock()

    # --- sample intake ---------------------------------------------------

    @property
    def pending(self) -> tuple[PendingUpdate, ...]:
        return tuple(self._queue)

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def replay_count(self, video_id: str) -> int:
        return self._replays.get(video_id, 0)

    def state_of(self, video_id: str) -> PlaybackState:
        session = self._videos.get(video_id)
        return session.state if session else PlaybackState.UNSTARTED

    def idle_seconds(self) -> float:
        """Seconds since the aggregator was created or last tracked a sample."""
        return self._clock() - self.last_activity

    def track(self, video_id: str, status: PlaybackStatus) -> PendingUpdate | None:
        """Record a playback sample; returns the update it enqueued, if any."""
        self.last_activity = self._clock()
        session = self._videos.setdefault(video_id, _VideoSession())
        if not status.is_loaded:
            session.state = PlaybackState.UNSTARTED
            return None

        starting = session.state is PlaybackState.UNSTARTED
        if starting:
            self._replays[video_id] = self._replays.get(video_id, 0) + 1
            session.completion_logged = False

        position, watched_seconds, completed, watch_percent = _watch_fields(status, self.completion_ratio)
        if completed:
            session.state = PlaybackState.COMPLETED
        elif status.is_playing:
            session.state = PlaybackState.PLAYING
        else:
            session.state = PlaybackState.PAUSED

        if not session.viewed:
            session.viewed = True
            self._spawn(self._count_view(video_id))

        just_completed = completed and not session.completion_logged
        jumped = (
            session.last_enqueued_position is not None
            and abs(position - session.last_enqueued_position) >= self.position_delta_ms
        )
        if completed:
            session.completion_logged = True
        if not (starting or just_completed or jumped):
            return None

        update = PendingUpdate(
            video_id=video_id,
            watched_seconds=watched_seconds,
            last_position=position,
            completed=completed,
            watch_percent=watch_percent,
            captured_at=next(self._seq),
        )
        self._queue.append(update)
        session.last_enqueued_position = position
        _log.debug(
            "enqueued user=%s video=%s pos=%d completed=%s pending=%d",
            self.user_id, video_id, position, completed, len(self._queue),
        )
        return update

    # --- flushing --------------------------------------------------------

    async def flush(self) -> int:
        """Drain the queue into the store; returns the number of updates written."""
        async with self._flush_lock:
            batch, self._queue = self._queue, []
            if not batch:
                return 0
            written = 0
            retries: list[PendingUpdate] = []
            for update in batch:
                try:
                    await self._write(update)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if update.completed and update.attempts < COMPLETION_RETRY_BUDGET:
                        retries.append(replace(update, attempts=update.attempts + 1))
                        _log.info(
                            "completion update user=%s video=%s failed, retrying next tick: %s",
                            self.user_id, update.video_id, exc,
                        )
                    else:
                        _log.warning(
                            "dropped metric update user=%s video=%s pos=%d: %s",
                            self.user_id, update.video_id, update.last_position, exc,
                        )
                    continue
                written += 1
                await self._rescore(update.video_id)
            if retries:
                self._queue[:0] = retries
            _log.debug("flushed user=%s written=%d of %d", self.user_id, written, len(batch))
            return written

    async def _write(self, update: PendingUpdate) -> VideoMetric:
        video_id = update.video_id
        replays = self._replays.get(video_id, 0)
        try:
            metric = await self._read_and_upsert(update, replays)
        except DataInconsistencyError:
            # one re-read per tick; a second conflict fails this update
            _log.info("metric user=%s video=%s changed underneath, re-reading", self.user_id, video_id)
            metric = await self._read_and_upsert(update, replays)
        # samples tracked while the write was in flight keep their replay increments
        self._replays[video_id] = max(0, self._replays.get(video_id, 0) - replays)
        self._flushed_seq[video_id] = max(self._flushed_seq.get(video_id, 0), update.captured_at)
        return metric

    async def _read_and_upsert(self, update: PendingUpdate, replays: int) -> VideoMetric:
        stale = update.captured_at < self._flushed_seq.get(update.video_id, 0)
        current = await self.store.read_metric_async(self.user_id, update.video_id)
        fields = merge_metric(current, update, replays, stale=stale)
        return await self.store.upsert_metric_async(
            self.user_id,
            update.video_id,
            fields,
            expected_version=current.version if current else 0,
        )

    async def _rescore(self, video_id: str) -> None:
        if self.scoring is None:
            return
        try:
            await self.scoring.recompute(self.user_id, video_id)
        except Exception as exc:
            _log.warning("score recompute failed user=%s video=%s: %s", self.user_id, video_id, exc)

    async def _count_view(self, video_id: str) -> None:
        try:
            await self.store.increment_views_async(video_id)
        except Exception as exc:
            _log.warning("increment_views failed video=%s: %s", video_id, exc)

    def _spawn(self, coro) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            # no loop (sync caller); view counting is best effort
            coro.close()
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # --- lifecycle -------------------------------------------------------

    def start(self) -> None:
        if self.running:
            return
        self._timer = asyncio.get_running_loop().create_task(
            self._tick_forever(), name=f"metrics-aggregator:{self.user_id}"
        )
        _log.debug("aggregator started user=%s interval=%.2fs", self.user_id, self.interval)

    async def _tick_forever(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await asyncio.shield(self.flush())

    async def stop(self) -> int:
        """Cancel the ticker and flush whatever is still pending."""
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        written = await self.flush()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        _log.debug("aggregator stopped user=%s final_flush=%d", self.user_id, written)
        return written


class AggregatorRegistry:
    """Live aggregators keyed by playback session id.

    Sessions that receive no samples for ``idle_timeout`` seconds are closed
    by a background sweep (final flush included), so clients that vanish
    without closing their session do not keep a ticking task alive.
    """

    def __init__(
        self,
        store: EngagementStore,
        *,
        scoring: ScoringEngine | None = None,
        factory: Callable[..., MetricsAggregator] = MetricsAggregator,
        idle_timeout: float | None = None,
        sweep_interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.scoring = scoring
        self._factory = factory
        self.idle_timeout = idle_timeout if idle_timeout is not None else settings.metrics_idle_timeout_seconds
        self.sweep_interval = sweep_interval if sweep_interval is not None else min(self.idle_timeout, 30.0)
        self._clock = clock
        self._sessions: dict[str, MetricsAggregator] = {}
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> MetricsAggregator | None:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str, user_id: str) -> MetricsAggregator:
        aggregator = self._sessions.get(session_id)
        if aggregator is not None:
            if aggregator.user_id != user_id:
                raise ValueError(f"session {session_id} belongs to another user")
            return aggregator
        aggregator = self._factory(user_id, self.store, scoring=self.scoring, clock=self._clock)
        aggregator.start()
        self._sessions[session_id] = aggregator
        self._ensure_sweeper()
        _log.info("opened metrics session %s for user %s", session_id, user_id)
        return aggregator

    async def stop(self, session_id: str) -> bool:
        aggregator = self._sessions.pop(session_id, None)
        if aggregator is None:
            return False
        await aggregator.stop()
        _log.info("closed metrics session %s", session_id)
        return True

    async def sweep_idle(self) -> list[str]:
        """Close every session idle for at least ``idle_timeout``; returns their ids."""
        if self.idle_timeout <= 0:
            return []
        idle = [
            session_id
            for session_id, aggregator in self._sessions.items()
            if aggregator.idle_seconds() >= self.idle_timeout
        ]
        for session_id in idle:
            try:
                await self.stop(session_id)
            except Exception:
                _log.exception("final flush failed for idle session %s", session_id)
        if idle:
            _log.info("closed %d idle metrics sessions, %d live", len(idle), len(self._sessions))
        return idle

    def _ensure_sweeper(self) -> None:
        if self.idle_timeout <= 0:
            return
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_forever(), name="metrics-idle-sweeper"
        )

    async def _sweep_forever(self) -> None:
        while self._sessions:
            await asyncio.sleep(self.sweep_interval)
            await asyncio.shield(self.sweep_idle())
        self._sweeper = None

    async def stop_all(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        for session_id in list(self._sessions):
            try:
                await self.stop(session_id)
            except Exception:
                _log.exception("final flush failed for session %s", session_id)
