import pytest

from conftest import save_video
from recipe_feed_server.db.engagement_store import FEEDBACK_MORE_LIKE_THIS, FEEDBACK_NOT_FOR_ME
from recipe_feed_server.recommendations.feed import FeedPaginator
from recipe_feed_server.recommendations.feed_state import FeedQuery


def _seed(store, n):
    for i in range(n):
        vid = f'v{i:02d}'
        save_video(store, vid)
        store.upsert_score('u1', vid, {'engagement_score': float(i), 'content_similarity_score': 0.0, 'total_score': float(i)})


class _BrokenPaginator:
    def __init__(self, inner, *, fail_pages=False, fail_feedback=False):
        self.inner = inner
        self.fail_pages = fail_pages
        self.fail_feedback = fail_feedback

    async def get_page(self, user_id, cursor=None):
        if self.fail_pages:
            raise RuntimeError('database unavailable')
        return await self.inner.get_page(user_id, cursor)

    async def submit_feedback(self, user_id, video_id, kind):
        if self.fail_feedback:
            raise RuntimeError('write failed')
        return await self.inner.submit_feedback(user_id, video_id, kind)


class TestFeedQuery:
    @pytest.mark.asyncio
    async def test_initial_fetch_and_load_more(self, store):
        _seed(store, 7)
        query = FeedQuery(FeedPaginator(store, page_size=3), 'u1')
        await query.fetch_initial()
        assert [v.id for v in query.videos] == ['v06', 'v05', 'v04']
        assert query.has_more and not query.is_loading

        assert await query.load_more() is True
        assert await query.load_more() is True
        assert [v.id for v in query.videos][-1] == 'v00'
        assert query.has_more is False
        # exhausted
        assert await query.load_more() is False
        assert len(query.videos) == 7

    @pytest.mark.asyncio
    async def test_empty_feed_is_not_an_error(self, store):
        query = FeedQuery(FeedPaginator(store), 'u1')
        await query.fetch_initial()
        assert query.is_empty
        assert query.error is None

    @pytest.mark.asyncio
    async def test_error_state_is_distinct_from_empty(self, store):
        query = FeedQuery(_BrokenPaginator(FeedPaginator(store), fail_pages=True), 'u1')
        await query.fetch_initial()
        assert isinstance(query.error, RuntimeError)
        assert not query.is_empty
        assert not query.is_loading

    @pytest.mark.asyncio
    async def test_load_more_without_cursor_is_noop(self, store):
        query = FeedQuery(FeedPaginator(store), 'u1')
        assert await query.load_more() is False

    @pytest.mark.asyncio
    async def test_not_for_me_refetches_from_top(self, store):
        _seed(store, 4)
        query = FeedQuery(FeedPaginator(store, page_size=2), 'u1')
        await query.fetch_initial()
        await query.load_more()
        assert [v.id for v in query.videos] == ['v03', 'v02', 'v01', 'v00']

        result = await query.apply_feedback('v02', FEEDBACK_NOT_FOR_ME)
        assert result.invalidate is True
        # cached pages were dropped; only the first page of the new ranking is loaded
        assert [v.id for v in query.videos] == ['v03', 'v01']
        assert query.has_more is True

    @pytest.mark.asyncio
    async def test_more_like_this_invalidates(self, store):
        save_video(store, 'a', embedding=[1.0, 0.0])
        store.upsert_metric('u1', 'a', {'watched_seconds': 1})
        query = FeedQuery(FeedPaginator(store), 'u1')
        await query.fetch_initial()
        assert query.videos == []
        await query.apply_feedback('a', FEEDBACK_MORE_LIKE_THIS)
        assert [v.id for v in query.videos] == ['a']

    @pytest.mark.asyncio
    async def test_failed_feedback_rolls_back(self, store):
        _seed(store, 3)
        paginator = _BrokenPaginator(FeedPaginator(store), fail_feedback=True)
        query = FeedQuery(paginator, 'u1')
        await query.fetch_initial()
        before = [v.id for v in query.videos]
        with pytest.raises(RuntimeError):
            await query.apply_feedback('v01', FEEDBACK_NOT_FOR_ME)
        assert [v.id for v in query.videos] == before
