from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Mapping

from recipe_feed_server.core.errors import MetricNotFoundError
from recipe_feed_server.db.engagement_store import EngagementStore, VideoMetric, VideoScore
from recipe_feed_server.utils.similarity import cosine_similarity

_log = logging.getLogger(__name__)

WATCHED_SECOND_WEIGHT = 1.0
COMPLETION_BONUS = 50.0
REPLAY_WEIGHT = 10.0
AVERAGE_PERCENT_WEIGHT = 0.5

ENGAGEMENT_WEIGHT = 0.7
SIMILARITY_WEIGHT = 0.3

_METRIC_KEYS = ('watched_seconds', 'last_position', 'completed', 'replay_count', 'average_watch_percent')


def compute_engagement_score(metric: VideoMetric) -> float:
    return (
        metric.watched_seconds * WATCHED_SECOND_WEIGHT
        + (COMPLETION_BONUS if metric.completed else 0.0)
        + metric.replay_count * REPLAY_WEIGHT
        + metric.average_watch_percent * AVERAGE_PERCENT_WEIGHT
    )


def compute_total_score(engagement: float, similarity: float | None) -> float:
    """Blend engagement with content similarity; without a similarity the engagement stands alone."""
    if similarity is None:
        return engagement
    return engagement * ENGAGEMENT_WEIGHT + similarity * SIMILARITY_WEIGHT


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ScoringEngine:
    """Turns durable metrics into durable scores.

    Holds no state between calls: every recompute reads the metric row, derives
    the score and writes it back in the same operation.
    """

    def __init__(self, store: EngagementStore) -> None:
        self.store = store

    async def similarity(self, video_id: str, reference_video_id: str | None) -> float | None:
        """Cosine similarity to the reference video, or None when either embedding is missing."""
        if not reference_video_id:
            return None
        reference = await self.store.get_embedding_async(reference_video_id)
        if reference is None:
            return None
        candidate = await self.store.get_embedding_async(video_id)
        if candidate is None:
            return None
        return cosine_similarity(reference, candidate)

    async def reference_for(self, user_id: str, reference_video_id: str | None = None) -> str | None:
        """The explicit reference, else the video of the user's latest ``more_like_this``."""
        if reference_video_id:
            return reference_video_id
        return await self.store.latest_reference_video_id_async(user_id)

    async def recompute(self, user_id: str, video_id: str, reference_video_id: str | None = None) -> VideoScore:
        """Rescore one video; without ``reference_video_id`` the user's stored reference applies."""
        metric = await self.store.read_metric_async(user_id, video_id)
        if metric is None:
            raise MetricNotFoundError(f"no metrics for user={user_id} video={video_id}")
        reference_video_id = await self.reference_for(user_id, reference_video_id)
        engagement = compute_engagement_score(metric)
        similarity = await self.similarity(video_id, reference_video_id)
        total = compute_total_score(engagement, similarity)
        score = await self.store.upsert_score_async(
            user_id,
            video_id,
            {
                'engagement_score': engagement,
                'content_similarity_score': similarity if similarity is not None else 0.0,
                'total_score': total,
                'last_calculated_at': _now(),
            },
        )
        _log.debug(
            "scored user=%s video=%s engagement=%.2f similarity=%s total=%.2f",
            user_id, video_id, engagement, similarity, total,
        )
        return score

    async def update_video_metrics(
        self,
        user_id: str,
        video_id: str,
        partial: Mapping[str, Any],
        reference_video_id: str | None = None,
    ) -> VideoScore:
        """Merge ``partial`` into the stored metric, write it and rescore."""
        unknown = set(partial) - set(_METRIC_KEYS)
        if unknown:
            raise ValueError(f"unknown metric fields: {sorted(unknown)}")
        current = await self.store.read_metric_async(user_id, video_id)
        base = asdict(current) if current is not None else {}
        merged = {key: base.get(key) for key in _METRIC_KEYS if key in base}
        merged.update(partial)
        await self.store.upsert_metric_async(
            user_id,
            video_id,
            merged,
            expected_version=current.version if current is not None else 0,
        )
        return await self.recompute(user_id, video_id, reference_video_id)

    async def refresh_scores(self, user_id: str, reference_video_id: str | None = None) -> list[VideoScore]:
        """Rescore every video the user has metrics for against one reference."""
        reference_video_id = await self.reference_for(user_id, reference_video_id)
        video_ids = await self.store.list_metric_video_ids_async(user_id)
        scores = []
        for video_id in video_ids:
            scores.append(await self.recompute(user_id, video_id, reference_video_id))
        _log.info("refreshed %d scores for user %s (reference=%s)", len(scores), user_id, reference_video_id)
        return scores
