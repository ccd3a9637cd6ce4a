from __future__ import annotations
from dataclasses import asdict
from fastapi import APIRouter, Query
from recipe_feed_server.core.dependencies import PaginatorDep, ScoringDep
from recipe_feed_server.schemas.feed import (
    FeedbackIn,
    FeedbackResult,
    FeedPageOut,
    RankedVideoOut,
    ScoreOut,
    ScoreRefreshResult,
)

router = APIRouter(prefix='/feed', tags=['feed'])


@router.get('/{user_id}', response_model=FeedPageOut)
async def get_feed_page(user_id: str, paginator: PaginatorDep, cursor: str | None = Query(default=None)):
    """One ranked page; follow ``next_cursor`` while ``has_more``."""
    page = await paginator.get_page(user_id, cursor)
    return FeedPageOut(
        videos=[RankedVideoOut(**asdict(v)) for v in page.videos],
        next_cursor=page.next_cursor,
        has_more=page.has_more,
    )


@router.post('/{user_id}/feedback', response_model=FeedbackResult)
async def submit_feedback(user_id: str, body: FeedbackIn, paginator: PaginatorDep):
    result = await paginator.submit_feedback(user_id, body.video_id, body.kind)
    return FeedbackResult(video_id=result.video_id, kind=result.kind, invalidate=result.invalidate)


@router.post('/{user_id}/scores/refresh', response_model=ScoreRefreshResult)
async def refresh_scores(user_id: str, scoring: ScoringDep, reference_video_id: str | None = Query(default=None)):
    scores = await scoring.refresh_scores(user_id, reference_video_id=reference_video_id)
    return ScoreRefreshResult(
        user_id=user_id,
        reference_video_id=reference_video_id,
        refreshed=len(scores),
        scores=[
            ScoreOut(
                video_id=s.video_id,
                engagement_score=s.engagement_score,
                content_similarity_score=s.content_similarity_score,
                total_score=s.total_score,
            )
            for s in scores
        ],
    )
