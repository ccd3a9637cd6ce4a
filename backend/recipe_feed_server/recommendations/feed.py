"""Keyset-paginated personalized feed.

Pages are ordered by ``total_score`` descending with the video id ascending as
tie-break, so every row has a unique position and a ``(score, id)`` cursor
resumes exactly after the last row a caller has seen.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

from recipe_feed_server.core.config import settings
from recipe_feed_server.core.errors import InvalidCursorError
from recipe_feed_server.db.engagement_store import (
    FEEDBACK_KINDS,
    FEEDBACK_MORE_LIKE_THIS,
    EngagementStore,
    RankCursor,
    RankedVideo,
)
from recipe_feed_server.recommendations.scoring import ScoringEngine

_log = logging.getLogger(__name__)


def encode_cursor(score: float, video_id: str) -> str:
    # repr() round-trips floats exactly and never contains '_'
    return f"{float(score)!r}_{video_id}"


def decode_cursor(cursor: str) -> RankCursor:
    score_text, sep, video_id = cursor.partition('_')
    if not sep or not score_text or not video_id:
        raise InvalidCursorError(f"malformed cursor {cursor!r}")
    try:
        score = float(score_text)
    except ValueError as exc:
        raise InvalidCursorError(f"malformed cursor score {score_text!r}") from exc
    if not math.isfinite(score):
        raise InvalidCursorError(f"cursor score must be finite, got {score_text!r}")
    return RankCursor(score=score, video_id=video_id)


@dataclass(slots=True)
class FeedPage:
    videos: list[RankedVideo] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False


@dataclass(slots=True)
class FeedInvalidation:
    """Returned by feedback writes: every cached page must be dropped and refetched from the top."""

    video_id: str
    kind: str
    invalidate: bool = True


class FeedPaginator:
    def __init__(
        self,
        store: EngagementStore,
        *,
        scoring: ScoringEngine | None = None,
        page_size: int | None = None,
    ) -> None:
        self.store = store
        self.scoring = scoring if scoring is not None else ScoringEngine(store)
        self.page_size = page_size if page_size is not None else settings.feed_page_size
        if self.page_size < 1:
            raise ValueError("page_size must be >= 1")

    async def get_page(self, user_id: str, cursor: str | None = None) -> FeedPage:
        """One page strictly after ``cursor`` (from the top when None).

        One extra look-ahead row is fetched to decide ``has_more``; it is never
        returned and never used for the next cursor.
        """
        rank_cursor = decode_cursor(cursor) if cursor else None
        rows = await self.store.ranked_page_query_async(user_id, rank_cursor, self.page_size + 1)
        has_more = len(rows) > self.page_size
        videos = rows[: self.page_size]
        next_cursor = None
        if has_more:
            last = videos[-1]
            next_cursor = encode_cursor(last.total_score, last.id)
        _log.debug(
            "feed page user=%s cursor=%s returned=%d has_more=%s",
            user_id, cursor, len(videos), has_more,
        )
        return FeedPage(videos=videos, next_cursor=next_cursor, has_more=has_more)

    async def submit_feedback(self, user_id: str, video_id: str, kind: str) -> FeedInvalidation:
        """Record feedback; the caller must treat every cached page as stale afterwards.

        ``not_for_me`` hides the video from later pages. ``more_like_this``
        rescores the user's videos with this video as the similarity reference
        and, once recorded, stays the reference for every later rescore. The
        feedback row is written only after the rescore succeeds.
        """
        if kind not in FEEDBACK_KINDS:
            raise ValueError(f"unknown feedback kind {kind!r}")
        if kind == FEEDBACK_MORE_LIKE_THIS:
            await self.scoring.refresh_scores(user_id, reference_video_id=video_id)
        await self.store.insert_feedback_async(user_id, video_id, kind)
        _log.info("feedback user=%s video=%s kind=%s", user_id, video_id, kind)
        return FeedInvalidation(video_id=video_id, kind=kind)
