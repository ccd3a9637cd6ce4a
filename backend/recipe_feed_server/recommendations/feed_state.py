from __future__ import annotations

import logging
from dataclasses import dataclass

from recipe_feed_server.db.engagement_store import FEEDBACK_NOT_FOR_ME, RankedVideo
from recipe_feed_server.recommendations.feed import FeedInvalidation, FeedPaginator

_log = logging.getLogger(__name__)


@dataclass(slots=True)
class _Snapshot:
    videos: list[RankedVideo]
    has_more: bool
    next_cursor: str | None
    error: Exception | None


class FeedQuery:
    """Caller-visible state of one user's feed: loaded videos plus loading/error flags.

    ``error`` is set when the last fetch failed and is distinct from an empty
    feed (``loaded`` with no videos and no error).
    """

    def __init__(self, paginator: FeedPaginator, user_id: str) -> None:
        self.paginator = paginator
        self.user_id = user_id
        self.videos: list[RankedVideo] = []
        self.is_loading = False
        self.has_more = False
        self.next_cursor: str | None = None
        self.error: Exception | None = None
        self.loaded = False
        # bumped on invalidate so in-flight fetches for dropped pages are discarded
        self._generation = 0

    @property
    def is_empty(self) -> bool:
        return self.loaded and not self.videos and self.error is None

    async def fetch_initial(self) -> list[RankedVideo]:
        self._generation += 1
        self.videos = []
        self.has_more = False
        self.next_cursor = None
        self.loaded = False
        await self._fetch(None, replace=True)
        return self.videos

    async def load_more(self) -> bool:
        """Append the next page; False when there is nothing to load."""
        if self.is_loading or not self.has_more or not self.next_cursor:
            return False
        return await self._fetch(self.next_cursor, replace=False)

    async def invalidate(self) -> list[RankedVideo]:
        _log.debug("invalidating feed for user %s", self.user_id)
        return await self.fetch_initial()

    async def apply_feedback(self, video_id: str, kind: str) -> FeedInvalidation:
        """Optimistically apply feedback, then refetch from the top.

        ``not_for_me`` removes the video from the visible list right away. If
        the write fails the previous state is restored and the error re-raised.
        """
        snapshot = _Snapshot(list(self.videos), self.has_more, self.next_cursor, self.error)
        if kind == FEEDBACK_NOT_FOR_ME:
            self.videos = [v for v in self.videos if v.id != video_id]
        try:
            result = await self.paginator.submit_feedback(self.user_id, video_id, kind)
        except Exception:
            self.videos = snapshot.videos
            self.has_more = snapshot.has_more
            self.next_cursor = snapshot.next_cursor
            self.error = snapshot.error
            raise
        if result.invalidate:
            await self.invalidate()
        return result

    async def _fetch(self, cursor: str | None, *, replace: bool) -> bool:
        generation = self._generation
        self.is_loading = True
        self.error = None
        try:
            page = await self.paginator.get_page(self.user_id, cursor)
        except Exception as exc:
            if generation == self._generation:
                self.error = exc
                _log.warning("feed fetch failed user=%s cursor=%s: %s", self.user_id, cursor, exc)
            return False
        finally:
            if generation == self._generation:
                self.is_loading = False
        if generation != self._generation:
            return False
        self.videos = list(page.videos) if replace else self.videos + list(page.videos)
        self.has_more = page.has_more
        self.next_cursor = page.next_cursor
        self.loaded = True
        return True
