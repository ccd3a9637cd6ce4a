import json

import httpx
import pytest

from conftest import save_video
from recipe_feed_server.core.errors import (
    ExhaustedRetriesError,
    FatalRequestError,
    RemoteCallError,
    RemoteErrorKind,
)
from recipe_feed_server.db.engagement_store import VideoContent
from recipe_feed_server.services.ai_agent import AIAgentOptions, AIAgentService
from recipe_feed_server.services.embeddings import EmbeddingService, prepare_text_for_embedding
from recipe_feed_server.services.image_generation import ImageGenerationOptions, ImageGenerationService
from recipe_feed_server.services.retry import RetryPolicy

POLICY = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


async def _no_sleep(_delay):
    return None


class _Recorder:
    """MockTransport handler replaying a scripted list of responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item

    def bodies(self):
        return [json.loads(r.content) for r in self.requests]


def _chat(content):
    return httpx.Response(200, json={'choices': [{'message': {'role': 'assistant', 'content': content}}]})


def _embedding(vector):
    return httpx.Response(200, json={'data': [{'embedding': vector}]})


class TestAIAgent:
    @pytest.mark.asyncio
    async def test_query_returns_content(self):
        handler = _Recorder(_chat('Simmer for 10 minutes.'))
        service = AIAgentService(server_url='https://ai.test/v1', api_key='k', policy=POLICY,
                                 transport=httpx.MockTransport(handler), sleep=_no_sleep)
        response = await service.query('How long?', context='Tomato soup', options=AIAgentOptions(max_tokens=50))
        assert response.content == 'Simmer for 10 minutes.'
        assert response.cached is False
        (body,) = handler.bodies()
        assert body['max_tokens'] == 50
        assert 'Tomato soup' in body['messages'][0]['content']
        assert handler.requests[0].headers['authorization'] == 'Bearer k'
        assert service.usage.successful_calls == 1
        await service.close()

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        handler = _Recorder(httpx.Response(500, text='oops'), _chat('ok'))
        service = AIAgentService(server_url='https://ai.test/v1', policy=POLICY,
                                 transport=httpx.MockTransport(handler), sleep=_no_sleep)
        assert (await service.query('hi')).content == 'ok'
        assert len(handler.requests) == 2
        assert service.usage.failed_calls == 1

    @pytest.mark.asyncio
    async def test_empty_prompt_is_bad_request(self):
        service = AIAgentService(server_url='https://ai.test/v1', policy=POLICY)
        with pytest.raises(FatalRequestError) as info:
            await service.query('   ')
        assert info.value.kind is RemoteErrorKind.BAD_REQUEST

    @pytest.mark.asyncio
    async def test_quota_aborts(self):
        handler = _Recorder(httpx.Response(402, text='quota'))
        service = AIAgentService(server_url='https://ai.test/v1', policy=POLICY,
                                 transport=httpx.MockTransport(handler), sleep=_no_sleep)
        with pytest.raises(FatalRequestError):
            await service.query('hi')
        assert len(handler.requests) == 1


class TestImageGeneration:
    @pytest.mark.asyncio
    async def test_submit_then_poll_until_ready(self):
        handler = _Recorder(
            httpx.Response(200, json={'id': 'job-1'}),
            httpx.Response(200, json={'id': 'job-1', 'status': 'Pending'}),
            httpx.Response(200, json={'id': 'job-1', 'status': 'Ready', 'result': {'sample': 'https://img.test/1.png'}}),
        )
        service = ImageGenerationService(server_url='https://img.test/v1', api_key='x', policy=POLICY,
                                         poll_interval=0, transport=httpx.MockTransport(handler), sleep=_no_sleep)
        uri = await service.generate(ImageGenerationOptions(prompt='pancakes', style='watercolor'))
        assert uri == 'https://img.test/1.png'
        submit = handler.requests[0]
        assert submit.url.path.endswith('/flux-pro-1.1')
        assert submit.headers['x-key'] == 'x'
        assert json.loads(submit.content)['prompt'].startswith('Create a soft watercolor')
        assert handler.requests[1].url.params['id'] == 'job-1'

    @pytest.mark.asyncio
    async def test_failed_generation_is_fatal(self):
        handler = _Recorder(
            httpx.Response(200, json={'id': 'job-2'}),
            httpx.Response(200, json={'status': 'Failed', 'error': 'nsfw'}),
        )
        service = ImageGenerationService(server_url='https://img.test/v1', policy=POLICY,
                                         poll_interval=0, transport=httpx.MockTransport(handler), sleep=_no_sleep)
        with pytest.raises(FatalRequestError):
            await service.generate(ImageGenerationOptions(prompt='x'))
        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_poll_timeout_retries_whole_generation(self):
        requests = []

        def handler(request):
            requests.append(request.method)
            if request.method == 'POST':
                return httpx.Response(200, json={'id': 'job-3'})
            return httpx.Response(200, json={'id': 'job-3', 'status': 'Pending'})

        service = ImageGenerationService(server_url='https://img.test/v1', policy=POLICY, poll_attempts=2,
                                         poll_interval=0, transport=httpx.MockTransport(handler), sleep=_no_sleep)
        with pytest.raises(ExhaustedRetriesError) as info:
            await service.generate(ImageGenerationOptions(prompt='x'))
        assert info.value.attempts == 3
        assert info.value.last_error.kind is RemoteErrorKind.UNKNOWN
        assert requests == ['POST', 'GET', 'GET'] * 3


class TestEmbeddings:
    def test_prepare_text(self):
        video = VideoContent(
            id='v1',
            title='Miso ramen',
            description='Rich broth',
            tags=['noodles', 'japanese'],
            recipe_metadata={'ingredients': ['miso', 'noodles'], 'cooking_time': 30, 'cuisine': 'Japanese'},
        )
        text = prepare_text_for_embedding(video)
        assert text.splitlines() == [
            'Title: Miso ramen',
            'Description: Rich broth',
            'Tags: noodles, japanese',
            'Recipe Details:',
            'Ingredients: miso, noodles',
            'Cooking Time: 30 minutes',
            'Cuisine: Japanese',
        ]

    def test_prepare_text_minimal(self):
        video = VideoContent(id='v1', title='Toast', description=None, tags=[], recipe_metadata=None)
        assert prepare_text_for_embedding(video) == 'Title: Toast'

    @pytest.mark.asyncio
    async def test_generate_checks_dimensions(self, store):
        handler = _Recorder(_embedding([0.1, 0.2]))
        service = EmbeddingService(store, server_url='https://ai.test/v1', policy=POLICY, dimensions=3,
                                   transport=httpx.MockTransport(handler), sleep=_no_sleep)
        with pytest.raises(RemoteCallError) as info:
            await service.generate('hello')
        assert info.value.kind is RemoteErrorKind.BAD_REQUEST

    @pytest.mark.asyncio
    async def test_payload_too_large_truncates_once(self, store):
        handler = _Recorder(httpx.Response(413, text='too big'), _embedding([0.0, 1.0, 0.0]))
        service = EmbeddingService(store, server_url='https://ai.test/v1', policy=POLICY, dimensions=3,
                                   max_input_chars=10, transport=httpx.MockTransport(handler), sleep=_no_sleep)
        vector = await service.generate('x' * 50)
        assert vector == [0.0, 1.0, 0.0]
        first, second = handler.bodies()
        assert len(first['input']) == 50
        assert len(second['input']) == 10
        assert second['dimensions'] == 3

    @pytest.mark.asyncio
    async def test_payload_too_large_after_truncation_aborts_and_logs_usage(self, store, session_factory):
        from recipe_feed_server.models.engagement import ApiUsageLog
        handler = _Recorder(httpx.Response(413, text='too big'))
        service = EmbeddingService(store, server_url='https://ai.test/v1', policy=POLICY, dimensions=3,
                                   max_input_chars=10, transport=httpx.MockTransport(handler), sleep=_no_sleep)
        with pytest.raises(FatalRequestError):
            await service.generate('x' * 50)
        assert len(handler.requests) == 2
        with session_factory() as session:
            (row,) = session.query(ApiUsageLog).all()
        assert row.service == 'embeddings'
        assert row.failed_calls == 2

    @pytest.mark.asyncio
    async def test_update_all_missing_embeddings(self, store):
        for vid in ('a', 'b', 'c'):
            save_video(store, vid)
        save_video(store, 'done', embedding=[1.0, 1.0, 1.0])
        handler = _Recorder(_embedding([0.5, 0.5, 0.5]))
        service = EmbeddingService(store, server_url='https://ai.test/v1', policy=POLICY, dimensions=3,
                                   transport=httpx.MockTransport(handler), sleep=_no_sleep)
        assert await service.update_all_missing_embeddings(batch_size=2) == 3
        assert len(handler.requests) == 3
        assert store.list_videos_missing_embeddings() == []
        assert store.get_embedding('a') == [0.5, 0.5, 0.5]

    @pytest.mark.asyncio
    async def test_update_missing_video_raises(self, store):
        service = EmbeddingService(store, server_url='https://ai.test/v1', policy=POLICY)
        with pytest.raises(LookupError):
            await service.update_video_embedding('ghost')
