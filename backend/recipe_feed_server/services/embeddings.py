"""Content embeddings for videos.

Text is assembled from the video title, description, tags and recipe
metadata, embedded remotely through the retry wrapper, checked against the
configured dimension and stored on the video row.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Mapping

from pydantic import BaseModel

from recipe_feed_server.core.config import settings
from recipe_feed_server.core.errors import RemoteCallError, RemoteErrorKind
from recipe_feed_server.db.engagement_store import EngagementStore, VideoContent
from recipe_feed_server.services.base import RemoteServiceBase
from recipe_feed_server.services.retry import RetryPolicy

EMBEDDINGS_ENDPOINT = "/embeddings"
USAGE_LOG_EVERY = 100

_log = logging.getLogger(__name__)


def prepare_text_for_embedding(video: VideoContent) -> str:
    parts = [
        f"Title: {video.title}",
        f"Description: {video.description}" if video.description else "",
        f"Tags: {', '.join(video.tags)}" if video.tags else "",
    ]
    meta = video.recipe_metadata or {}
    if meta:
        parts.append("Recipe Details:")
        if meta.get('ingredients'):
            parts.append(f"Ingredients: {', '.join(meta['ingredients'])}")
        if meta.get('cooking_time') is not None:
            parts.append(f"Cooking Time: {meta['cooking_time']} minutes")
        if meta.get('difficulty'):
            parts.append(f"Difficulty: {meta['difficulty']}")
        if meta.get('cuisine'):
            parts.append(f"Cuisine: {meta['cuisine']}")
        if meta.get('dietary_tags'):
            parts.append(f"Dietary Tags: {', '.join(meta['dietary_tags'])}")
    return "\n".join(p for p in parts if p)


class _EmbeddingItem(BaseModel):
    embedding: list[float]


class _EmbeddingResponse(BaseModel):
    data: list[_EmbeddingItem]


class EmbeddingService(RemoteServiceBase):
    name = "embeddings"
    request_timeout = 30.0

    def __init__(
        self,
        store: EngagementStore,
        *,
        server_url: str | None = None,
        api_key: str | None = None,
        policy: RetryPolicy | None = None,
        dimensions: int | None = None,
        max_input_chars: int | None = None,
        **kwargs,
    ) -> None:
        super().__init__(
            server_url=server_url or settings.ai_api_base_url,
            api_key=api_key if api_key is not None else settings.ai_api_key,
            policy=policy,
            **kwargs,
        )
        self.store = store
        self.dimensions = dimensions or settings.embedding_dimensions
        self.max_input_chars = max_input_chars or settings.embedding_max_input_chars

    def request_headers(self) -> Mapping[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    async def generate(self, text: str) -> list[float]:
        state = {"text": text}

        def _shrink() -> bool:
            if len(state["text"]) <= self.max_input_chars:
                return False
            state["text"] = state["text"][: self.max_input_chars]
            _log.info("embedding input truncated to %d chars", self.max_input_chars)
            return True

        async def _send() -> list[float]:
            payload = {
                "model": settings.ai_embedding_model,
                "input": state["text"],
                "dimensions": self.dimensions,
            }
            response = await self.http.post(EMBEDDINGS_ENDPOINT, json=payload, response_model=_EmbeddingResponse)
            if not response.data:
                raise RemoteCallError.of("empty embedding response", RemoteErrorKind.UNKNOWN)
            return response.data[0].embedding

        embedding = await self.call(_send, shrink=_shrink, label="embeddings.generate")
        # rough token estimate, 4 chars per token
        self.usage.total_tokens += len(state["text"]) // 4
        if self.usage.total_calls and self.usage.total_calls % USAGE_LOG_EVERY == 0:
            await self._log_usage()
        if len(embedding) != self.dimensions:
            raise RemoteCallError.of(
                f"embedding has {len(embedding)} dimensions, expected {self.dimensions}",
                RemoteErrorKind.BAD_REQUEST,
            )
        return embedding

    async def on_call_failed(self, exc: Exception) -> None:
        await super().on_call_failed(exc)
        await self._log_usage()

    async def _log_usage(self) -> None:
        try:
            await self.store.log_api_usage_async(self.name, self.usage.as_log_fields())
        except Exception:
            _log.exception("failed to record embedding API usage")

    async def update_video_embedding(self, video_id: str) -> list[float]:
        video = await self.store.get_video_content_async(video_id)
        if video is None:
            raise LookupError(f"video {video_id} not found")
        embedding = await self.generate(prepare_text_for_embedding(video))
        await self.store.store_embedding_async(video_id, embedding)
        _log.info("updated embedding for video %s", video_id)
        return embedding

    async def update_all_missing_embeddings(self, *, batch_size: int = 5, batch_pause: float = 1.0) -> int:
        """Embed every video without an embedding, ``batch_size`` at a time.

        Returns the number of videos updated; the first failure propagates.
        """
        video_ids = await self.store.list_videos_missing_embeddings_async()
        if not video_ids:
            _log.info("no videos without embeddings")
            return 0
        _log.info("found %d videos without embeddings", len(video_ids))
        for start in range(0, len(video_ids), batch_size):
            batch = video_ids[start:start + batch_size]
            await asyncio.gather(*(self.update_video_embedding(vid) for vid in batch))
            _log.info("processed embedding batch %d", start // batch_size + 1)
            if start + batch_size < len(video_ids) and batch_pause > 0:
                await self._sleep(batch_pause)
        return len(video_ids)
