from __future__ import annotations
from typing import Any, Literal
from pydantic import BaseModel


class RankedVideoOut(BaseModel):
    id: str
    title: str
    description: str | None = None
    video_url: str
    thumbnail_url: str | None = None
    category: str | None = None
    tags: list[str] = []
    recipe_metadata: dict[str, Any] | None = None
    views_count: int = 0
    likes_count: int = 0
    comments_count: int = 0
    total_score: float
    engagement_score: float
    content_similarity_score: float


class FeedPageOut(BaseModel):
    videos: list[RankedVideoOut]
    next_cursor: str | None = None
    has_more: bool


class FeedbackIn(BaseModel):
    video_id: str
    kind: Literal['more_like_this', 'not_for_me']


class FeedbackResult(BaseModel):
    video_id: str
    kind: str
    invalidate: bool


class ScoreOut(BaseModel):
    video_id: str
    engagement_score: float
    content_similarity_score: float
    total_score: float


class ScoreRefreshResult(BaseModel):
    user_id: str
    reference_video_id: str | None = None
    refreshed: int
    scores: list[ScoreOut]
