from __future__ import annotations

import logging
from typing import Mapping

from pydantic import BaseModel

from recipe_feed_server.core.config import settings
from recipe_feed_server.core.errors import RemoteCallError, RemoteErrorKind
from recipe_feed_server.services.base import RemoteServiceBase
from recipe_feed_server.services.retry import RetryPolicy

CHAT_ENDPOINT = "/chat/completions"

SYSTEM_PROMPT = (
    "You are a helpful cooking assistant. Answer questions about the recipe "
    "in the provided context. Keep answers short and practical."
)

_log = logging.getLogger(__name__)


class AIAgentOptions(BaseModel):
    temperature: float = 0.7
    max_tokens: int = 500
    model: str | None = None


class AIAgentResponse(BaseModel):
    content: str
    cached: bool = False


class _ChatMessage(BaseModel):
    role: str
    content: str | None = None


class _ChatChoice(BaseModel):
    message: _ChatMessage


class _ChatCompletion(BaseModel):
    choices: list[_ChatChoice]


class AIAgentService(RemoteServiceBase):
    """Recipe Q&A against an OpenAI-compatible chat completion endpoint."""

    name = "ai_agent"
    request_timeout = 60.0

    def __init__(self, *, server_url: str | None = None, api_key: str | None = None, policy: RetryPolicy | None = None, **kwargs) -> None:
        super().__init__(
            server_url=server_url or settings.ai_api_base_url,
            api_key=api_key if api_key is not None else settings.ai_api_key,
            policy=policy,
            **kwargs,
        )

    def request_headers(self) -> Mapping[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    async def query(self, user_prompt: str, context: str = "", options: AIAgentOptions | None = None) -> AIAgentResponse:
        if not user_prompt or not user_prompt.strip():
            raise RemoteCallError.of("userPrompt is required", RemoteErrorKind.BAD_REQUEST)
        opts = options or AIAgentOptions()
        payload = {
            "model": opts.model or settings.ai_chat_model,
            "temperature": opts.temperature,
            "max_tokens": opts.max_tokens,
            "messages": [
                {"role": "system", "content": f"{SYSTEM_PROMPT}\n\nRecipe context:\n{context}" if context else SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
        }

        async def _send() -> _ChatCompletion:
            return await self.http.post(CHAT_ENDPOINT, json=payload, response_model=_ChatCompletion)

        completion = await self.call(_send, label="ai_agent.query")
        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            # a well-formed but empty completion is not worth retrying
            raise RemoteCallError.of("no response content from completion service", RemoteErrorKind.BAD_REQUEST)
        _log.debug("ai_agent answered prompt len=%d", len(user_prompt))
        return AIAgentResponse(content=content, cached=False)
