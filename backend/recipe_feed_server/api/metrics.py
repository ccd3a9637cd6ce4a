from __future__ import annotations
from fastapi import APIRouter, HTTPException
from recipe_feed_server.core.dependencies import RegistryDep
from recipe_feed_server.metrics.aggregator import PlaybackStatus
from recipe_feed_server.schemas.metrics import PlaybackSampleIn, PlaybackSampleResult, SessionClosedResult

router = APIRouter(prefix='/metrics', tags=['metrics'])


@router.post('/sessions/{session_id}/samples', response_model=PlaybackSampleResult)
async def track_sample(session_id: str, body: PlaybackSampleIn, registry: RegistryDep):
    """Feed one playback sample into the session's aggregator (opened on first use)."""
    try:
        aggregator = registry.get_or_create(session_id, body.user_id)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    update = aggregator.track(
        body.video_id,
        PlaybackStatus(
            is_loaded=body.is_loaded,
            position_ms=body.position_ms,
            duration_ms=body.duration_ms,
            is_playing=body.is_playing,
        ),
    )
    return PlaybackSampleResult(
        session_id=session_id,
        enqueued=update is not None,
        pending=len(aggregator.pending),
        state=aggregator.state_of(body.video_id).value,
    )


@router.delete('/sessions/{session_id}', response_model=SessionClosedResult)
async def close_session(session_id: str, registry: RegistryDep):
    """Stop the session's aggregator after one final flush."""
    closed = await registry.stop(session_id)
    if not closed:
        raise HTTPException(status_code=404, detail=f'unknown session {session_id}')
    return SessionClosedResult(session_id=session_id, closed=True)
