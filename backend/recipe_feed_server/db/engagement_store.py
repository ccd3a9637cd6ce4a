from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from recipe_feed_server.core.errors import DataInconsistencyError
from recipe_feed_server.db.session import SessionLocal
from recipe_feed_server.models.engagement import (
    ApiUsageLog,
    Video,
    VideoFeedbackRow,
    VideoMetricRow,
    VideoScoreRow,
)

_log = logging.getLogger(__name__)

FEEDBACK_MORE_LIKE_THIS = 'more_like_this'
FEEDBACK_NOT_FOR_ME = 'not_for_me'
FEEDBACK_KINDS = (FEEDBACK_MORE_LIKE_THIS, FEEDBACK_NOT_FOR_ME)

_METRIC_FIELDS = ('watched_seconds', 'last_position', 'completed', 'replay_count', 'average_watch_percent')
_SCORE_FIELDS = ('engagement_score', 'content_similarity_score', 'total_score', 'last_calculated_at')


@dataclass(slots=True)
class VideoMetric:
    user_id: str
    video_id: str
    watched_seconds: int = 0
    last_position: int = 0
    completed: bool = False
    replay_count: int = 0
    average_watch_percent: float = 0.0
    # 0 means "not stored yet"
    version: int = 0


@dataclass(slots=True)
class VideoScore:
    user_id: str
    video_id: str
    engagement_score: float
    content_similarity_score: float
    total_score: float
    last_calculated_at: datetime


@dataclass(slots=True)
class RankedVideo:
    id: str
    title: str
    video_url: str
    total_score: float
    engagement_score: float
    content_similarity_score: float
    description: str | None = None
    thumbnail_url: str | None = None
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    recipe_metadata: dict[str, Any] | None = None
    views_count: int = 0
    likes_count: int = 0
    comments_count: int = 0


@dataclass(slots=True)
class VideoContent:
    id: str
    title: str
    description: str | None
    tags: list[str]
    recipe_metadata: dict[str, Any] | None


@dataclass(frozen=True, slots=True)
class RankCursor:
    score: float
    video_id: str


# --- row -> entity mapping (one function per entity) ---------------------

def metric_from_row(row: VideoMetricRow) -> VideoMetric:
    return VideoMetric(
        user_id=row.user_id,
        video_id=row.video_id,
        watched_seconds=int(row.watched_seconds or 0),
        last_position=int(row.last_position or 0),
        completed=bool(row.completed),
        replay_count=int(row.replay_count or 0),
        average_watch_percent=float(row.average_watch_percent or 0.0),
        version=int(row.version or 0),
    )


def score_from_row(row: VideoScoreRow) -> VideoScore:
    return VideoScore(
        user_id=row.user_id,
        video_id=row.video_id,
        engagement_score=float(row.engagement_score or 0.0),
        content_similarity_score=float(row.content_similarity_score or 0.0),
        total_score=float(row.total_score or 0.0),
        last_calculated_at=row.last_calculated_at,
    )


def ranked_video_from_row(score: VideoScoreRow, video: Video) -> RankedVideo:
    return RankedVideo(
        id=video.id,
        title=video.title,
        description=video.description or None,
        video_url=video.video_url,
        thumbnail_url=video.thumbnail_url or None,
        category=video.category or None,
        tags=list(video.tags or []),
        recipe_metadata=video.recipe_metadata,
        views_count=int(video.views_count or 0),
        likes_count=int(video.likes_count or 0),
        comments_count=int(video.comments_count or 0),
        total_score=float(score.total_score or 0.0),
        engagement_score=float(score.engagement_score or 0.0),
        content_similarity_score=float(score.content_similarity_score or 0.0),
    )


def _validate_metric_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    for key in _METRIC_FIELDS:
        if key not in fields:
            continue
        value = fields[key]
        if key == 'completed':
            cleaned[key] = bool(value)
            continue
        if value is None or value < 0:
            raise ValueError(f"{key} must be >= 0, got {value!r}")
        if key == 'average_watch_percent':
            if value > 100:
                raise ValueError(f"average_watch_percent must be <= 100, got {value!r}")
            cleaned[key] = float(value)
        else:
            cleaned[key] = int(value)
    return cleaned


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EngagementStore:
    """Durable per-user/per-video metrics, scores, feedback and embeddings.

    Every method opens its own session; the ``*_async`` twins run the sync
    method in a worker thread so callers on the event loop never block.
    """

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    # --- metrics -------------------------------------------------------

    def read_metric(self, user_id: str, video_id: str) -> VideoMetric | None:
        with self._session_factory() as session:
            row = self._metric_row(session, user_id, video_id)
            return metric_from_row(row) if row is not None else None

    def upsert_metric(
        self,
        user_id: str,
        video_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> VideoMetric:
        """Write the metric row keyed by (user, video).

        ``expected_version`` turns the write into a compare-and-set against the
        version returned by :meth:`read_metric` (0 = the caller saw no row).
        A mismatch raises :class:`DataInconsistencyError` and writes nothing.
        """
        values = _validate_metric_fields(fields)
        with self._session_factory() as session:
            row = self._metric_row(session, user_id, video_id)
            if row is None:
                if expected_version:
                    raise DataInconsistencyError(
                        f"metric user={user_id} video={video_id} vanished (expected version {expected_version})"
                    )
                row = VideoMetricRow(user_id=user_id, video_id=video_id)
                session.add(row)
            elif expected_version is not None and row.version != expected_version:
                raise DataInconsistencyError(
                    f"metric user={user_id} video={video_id} at version {row.version}, expected {expected_version}"
                )
            for key, value in values.items():
                setattr(row, key, value)
            try:
                session.commit()
            except (StaleDataError, IntegrityError) as exc:
                session.rollback()
                raise DataInconsistencyError(
                    f"concurrent write to metric user={user_id} video={video_id}"
                ) from exc
            return metric_from_row(row)

    def list_metric_video_ids(self, user_id: str) -> list[str]:
        with self._session_factory() as session:
            stmt = (
                select(VideoMetricRow.video_id)
                .where(VideoMetricRow.user_id == user_id)
                .order_by(VideoMetricRow.video_id)
            )
            return list(session.execute(stmt).scalars().all())

    @staticmethod
    def _metric_row(session: Session, user_id: str, video_id: str) -> VideoMetricRow | None:
        stmt = select(VideoMetricRow).where(
            VideoMetricRow.user_id == user_id,
            VideoMetricRow.video_id == video_id,
        )
        return session.execute(stmt).scalar_one_or_none()

    # --- scores --------------------------------------------------------

    def upsert_score(self, user_id: str, video_id: str, fields: Mapping[str, Any]) -> VideoScore:
        with self._session_factory() as session:
            stmt = select(VideoScoreRow).where(
                VideoScoreRow.user_id == user_id,
                VideoScoreRow.video_id == video_id,
            )
            row = session.execute(stmt).scalar_one_or_none()
            if row is None:
                row = VideoScoreRow(user_id=user_id, video_id=video_id)
                session.add(row)
            for key in _SCORE_FIELDS:
                if key in fields:
                    setattr(row, key, fields[key])
            if row.last_calculated_at is None:
                row.last_calculated_at = _utcnow()
            session.commit()
            return score_from_row(row)

    def read_score(self, user_id: str, video_id: str) -> VideoScore | None:
        with self._session_factory() as session:
            stmt = select(VideoScoreRow).where(
                VideoScoreRow.user_id == user_id,
                VideoScoreRow.video_id == video_id,
            )
            row = session.execute(stmt).scalar_one_or_none()
            return score_from_row(row) if row is not None else None

    def ranked_page_query(self, user_id: str, cursor: RankCursor | None, limit: int) -> list[RankedVideo]:
        """Rows strictly after ``cursor`` in (total_score DESC, video_id ASC) order.

        Videos the user marked ``not_for_me`` and unpublished videos are excluded.
        """
        if limit <= 0:
            return []
        rejected = exists(
            select(VideoFeedbackRow.id).where(
                VideoFeedbackRow.user_id == user_id,
                VideoFeedbackRow.video_id == VideoScoreRow.video_id,
                VideoFeedbackRow.kind == FEEDBACK_NOT_FOR_ME,
            )
        )
        stmt = (
            select(VideoScoreRow, Video)
            .join(Video, Video.id == VideoScoreRow.video_id)
            .where(
                VideoScoreRow.user_id == user_id,
                Video.status == 'PUBLISHED',
                ~rejected,
            )
        )
        if cursor is not None:
            stmt = stmt.where(
                or_(
                    VideoScoreRow.total_score < cursor.score,
                    and_(
                        VideoScoreRow.total_score == cursor.score,
                        VideoScoreRow.video_id > cursor.video_id,
                    ),
                )
            )
        stmt = stmt.order_by(VideoScoreRow.total_score.desc(), VideoScoreRow.video_id.asc()).limit(limit)
        with self._session_factory() as session:
            return [ranked_video_from_row(score, video) for score, video in session.execute(stmt).all()]

    # --- feedback ------------------------------------------------------

    def insert_feedback(self, user_id: str, video_id: str, kind: str) -> None:
        if kind not in FEEDBACK_KINDS:
            raise ValueError(f"unknown feedback kind {kind!r}")
        with self._session_factory() as session:
            session.add(VideoFeedbackRow(user_id=user_id, video_id=video_id, kind=kind))
            session.commit()

    def latest_reference_video_id(self, user_id: str) -> str | None:
        """Video of the user's most recent ``more_like_this`` feedback, if any."""
        stmt = (
            select(VideoFeedbackRow.video_id)
            .where(
                VideoFeedbackRow.user_id == user_id,
                VideoFeedbackRow.kind == FEEDBACK_MORE_LIKE_THIS,
            )
            .order_by(VideoFeedbackRow.created_at.desc(), VideoFeedbackRow.id.desc())
            .limit(1)
        )
        with self._session_factory() as session:
            return session.execute(stmt).scalar_one_or_none()

    # --- videos & embeddings -------------------------------------------

    def save_video(self, video_id: str, **fields: Any) -> None:
        with self._session_factory() as session:
            row = session.get(Video, video_id)
            if row is None:
                row = Video(id=video_id, **fields)
                session.add(row)
            else:
                for key, value in fields.items():
                    setattr(row, key, value)
            session.commit()

    def get_video_content(self, video_id: str) -> VideoContent | None:
        with self._session_factory() as session:
            row = session.get(Video, video_id)
            if row is None:
                return None
            return VideoContent(
                id=row.id,
                title=row.title,
                description=row.description,
                tags=list(row.tags or []),
                recipe_metadata=row.recipe_metadata,
            )

    def get_embedding(self, video_id: str) -> list[float] | None:
        with self._session_factory() as session:
            value = session.execute(select(Video.embedding).where(Video.id == video_id)).scalar_one_or_none()
            if not value:
                return None
            return [float(x) for x in value]

    def store_embedding(self, video_id: str, embedding: Sequence[float]) -> None:
        with self._session_factory() as session:
            result = session.execute(
                update(Video)
                .where(Video.id == video_id)
                .values(embedding=[float(x) for x in embedding], embedding_updated_at=_utcnow())
            )
            if result.rowcount == 0:
                raise LookupError(f"video {video_id} not found")
            session.commit()

    def list_videos_missing_embeddings(self) -> list[str]:
        with self._session_factory() as session:
            stmt = select(Video.id).where(Video.embedding.is_(None)).order_by(Video.id)
            return list(session.execute(stmt).scalars().all())

    def increment_views(self, video_id: str) -> None:
        with self._session_factory() as session:
            session.execute(
                update(Video).where(Video.id == video_id).values(views_count=Video.views_count + 1)
            )
            session.commit()

    def log_api_usage(self, service: str, metrics: Mapping[str, int]) -> None:
        with self._session_factory() as session:
            session.add(
                ApiUsageLog(
                    service=service,
                    total_calls=int(metrics.get('total_calls', 0)),
                    successful_calls=int(metrics.get('successful_calls', 0)),
                    failed_calls=int(metrics.get('failed_calls', 0)),
                    total_tokens=int(metrics.get('total_tokens', 0)),
                )
            )
            session.commit()

    # --- async twins ---------------------------------------------------

    async def read_metric_async(self, user_id: str, video_id: str) -> VideoMetric | None:
        return await asyncio.to_thread(self.read_metric, user_id, video_id)

    async def upsert_metric_async(
        self,
        user_id: str,
        video_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> VideoMetric:
        return await asyncio.to_thread(
            self.upsert_metric,
            user_id,
            video_id,
            fields,
            expected_version=expected_version,
        )

    async def list_metric_video_ids_async(self, user_id: str) -> list[str]:
        return await asyncio.to_thread(self.list_metric_video_ids, user_id)

    async def upsert_score_async(self, user_id: str, video_id: str, fields: Mapping[str, Any]) -> VideoScore:
        return await asyncio.to_thread(self.upsert_score, user_id, video_id, fields)

    async def ranked_page_query_async(self, user_id: str, cursor: RankCursor | None, limit: int) -> list[RankedVideo]:
        return await asyncio.to_thread(self.ranked_page_query, user_id, cursor, limit)

    async def insert_feedback_async(self, user_id: str, video_id: str, kind: str) -> None:
        await asyncio.to_thread(self.insert_feedback, user_id, video_id, kind)

    async def latest_reference_video_id_async(self, user_id: str) -> str | None:
        return await asyncio.to_thread(self.latest_reference_video_id, user_id)

    async def get_video_content_async(self, video_id: str) -> VideoContent | None:
        return await asyncio.to_thread(self.get_video_content, video_id)

    async def get_embedding_async(self, video_id: str) -> list[float] | None:
        return await asyncio.to_thread(self.get_embedding, video_id)

    async def store_embedding_async(self, video_id: str, embedding: Sequence[float]) -> None:
        await asyncio.to_thread(self.store_embedding, video_id, embedding)

    async def list_videos_missing_embeddings_async(self) -> list[str]:
        return await asyncio.to_thread(self.list_videos_missing_embeddings)

    async def increment_views_async(self, video_id: str) -> None:
        await asyncio.to_thread(self.increment_views, video_id)

    async def log_api_usage_async(self, service: str, metrics: Mapping[str, int]) -> None:
        await asyncio.to_thread(self.log_api_usage, service, metrics)
