from __future__ import annotations

import logging
from typing import Literal, Mapping

from pydantic import BaseModel

from recipe_feed_server.core.config import settings
from recipe_feed_server.core.errors import RemoteCallError, RemoteErrorKind
from recipe_feed_server.services.base import RemoteServiceBase
from recipe_feed_server.services.retry import RetryPolicy

GENERATE_ENDPOINT = "/flux-pro-1.1"
RESULT_ENDPOINT = "/get_result"

ImageStyle = Literal['photorealistic', 'minimalistic', 'cartoon', 'line-art', 'watercolor']

_STYLE_INSTRUCTIONS: dict[str, str] = {
    'photorealistic': 'Create a photorealistic image with natural lighting and detailed textures',
    'minimalistic': 'Create a clean, minimalistic image with simple shapes and limited color palette',
    'cartoon': 'Create a cartoon-style illustration with bold colors and defined outlines',
    'line-art': 'Create a black and white line art illustration with clean, continuous lines',
    'watercolor': 'Create a soft watercolor style image with gentle color transitions',
}

_log = logging.getLogger(__name__)


class ImageGenerationOptions(BaseModel):
    prompt: str
    width: int = 1024
    height: int = 768
    style: ImageStyle | None = None

    def styled_prompt(self) -> str:
        if self.style is None:
            return self.prompt
        return f"{_STYLE_INSTRUCTIONS[self.style]}. {self.prompt}"


class _GenerationSubmitted(BaseModel):
    id: str


class _GenerationSample(BaseModel):
    sample: str


class GenerationResult(BaseModel):
    id: str | None = None
    status: str
    result: _GenerationSample | None = None
    error: str | None = None

    @property
    def image_uri(self) -> str | None:
        return self.result.sample if self.result else None


class ImageGenerationService(RemoteServiceBase):
    """Submit-then-poll client for the image generation API."""

    name = "image_generation"
    request_timeout = 30.0

    def __init__(
        self,
        *,
        server_url: str | None = None,
        api_key: str | None = None,
        policy: RetryPolicy | None = None,
        poll_attempts: int | None = None,
        poll_interval: float | None = None,
        **kwargs,
    ) -> None:
        super().__init__(
            server_url=server_url or settings.image_api_base_url,
            api_key=api_key if api_key is not None else settings.image_api_key,
            policy=policy,
            **kwargs,
        )
        self.poll_attempts = poll_attempts if poll_attempts is not None else settings.image_poll_attempts
        self.poll_interval = poll_interval if poll_interval is not None else settings.image_poll_interval_seconds

    def request_headers(self) -> Mapping[str, str]:
        headers = {"accept": "application/json"}
        if self.api_key:
            headers["x-key"] = self.api_key
        return headers

    async def get_result(self, generation_id: str) -> GenerationResult:
        return await self.http.get(RESULT_ENDPOINT, params={"id": generation_id}, response_model=GenerationResult)

    async def wait_for_completion(self, generation_id: str) -> GenerationResult:
        for attempt in range(1, self.poll_attempts + 1):
            result = await self.get_result(generation_id)
            if result.status == 'Ready':
                return result
            if result.status == 'Failed':
                raise RemoteCallError.of(
                    f"image generation {generation_id} failed: {result.error or 'no detail'}",
                    RemoteErrorKind.BAD_REQUEST,
                )
            _log.debug("generation %s pending (poll %d/%d)", generation_id, attempt, self.poll_attempts)
            await self._sleep(self.poll_interval)
        raise RemoteCallError.of(f"image generation {generation_id} timed out", RemoteErrorKind.UNKNOWN)

    async def generate(self, options: ImageGenerationOptions) -> str:
        """Generate an image and return its URI."""
        payload = {"prompt": options.styled_prompt(), "width": options.width, "height": options.height}

        async def _generate_and_wait() -> GenerationResult:
            submitted = await self.http.post(GENERATE_ENDPOINT, json=payload, response_model=_GenerationSubmitted)
            return await self.wait_for_completion(submitted.id)

        result = await self.call(_generate_and_wait, label="image_generation.generate")
        uri = result.image_uri
        if not uri:
            raise RemoteCallError.of("generation finished without an image", RemoteErrorKind.UNKNOWN)
        return uri
