from __future__ import annotations
from pydantic import BaseModel, Field


class PlaybackSampleIn(BaseModel):
    user_id: str = Field(min_length=1)
    video_id: str = Field(min_length=1)
    is_loaded: bool
    position_ms: int = Field(default=0, ge=0)
    duration_ms: int | None = Field(default=None, ge=0)
    is_playing: bool = False


class PlaybackSampleResult(BaseModel):
    session_id: str
    enqueued: bool
    pending: int
    state: str


class SessionClosedResult(BaseModel):
    session_id: str
    closed: bool
