from __future__ import annotations
from sqlalchemy import Integer, String, DateTime, JSON, Float, Boolean, Text, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from recipe_feed_server.db.session import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Video(Base):
    __tablename__ = 'videos'
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    video_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    thumbnail_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tags: Mapped[list | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    # free-form recipe details (ingredients, cooking_time, difficulty, cuisine, dietary_tags)
    recipe_metadata: Mapped[dict | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    views_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    likes_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comments_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default='PUBLISHED', nullable=False, index=True)
    # content embedding (fixed length, see settings.embedding_dimensions)
    embedding: Mapped[list | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    embedding_updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)


class VideoMetricRow(Base):
    __tablename__ = 'video_metrics'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    video_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    watched_seconds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # milliseconds
    last_position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    replay_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_watch_percent: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    # optimistic concurrency counter, bumped by every write
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'video_id', name='uq_video_metrics_user_video'),
    )
    __mapper_args__ = {'version_id_col': version}


class VideoScoreRow(Base):
    __tablename__ = 'video_scores'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    video_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    engagement_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    content_similarity_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_calculated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'video_id', name='uq_video_scores_user_video'),
        # keyset ordering: total_score DESC, video_id ASC
        Index('ix_video_scores_rank', 'user_id', 'total_score', 'video_id'),
    )


class VideoFeedbackRow(Base):
    __tablename__ = 'video_feedback'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    video_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # 'more_like_this' | 'not_for_me'
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index('ix_video_feedback_user_kind', 'user_id', 'kind'),
    )


class ApiUsageLog(Base):
    __tablename__ = 'api_usage_logs'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    service: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    total_calls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_calls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_calls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
