"""Concrete implementations for LLM providers."""

import asyncio
import logging
import os
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import openai

from . import config
from .streaming import SSEDecoder

logger = logging.getLogger(__name__)


class UpstreamError(Exception):
    """The upstream endpoint answered with a failure status."""

    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code

    @classmethod
    def from_response(cls, response: httpx.Response) -> "UpstreamError":
        """Builds the error from a ``{error, detail}`` body, or the raw text."""
        try:
            body = response.json()
        except ValueError:
            body = None
        detail = None
        if isinstance(body, dict):
            detail = body.get("detail") or body.get("error")
        if not detail:
            detail = response.text.strip() or "Upstream error"
        return cls(str(detail), response.status_code)


class LLM(ABC):
    """Abstract Base Class for all LLM providers."""

    @abstractmethod
    async def generate_response(
        self, messages: List[Dict[str, Any]], model: Optional[str] = None, **kwargs: Any
    ) -> Any:
        """Generates a complete, non-streaming response.

        Parameters
        ----------
        messages : List[Dict[str, Any]]
            The request history as ``{"role", "content"}`` dictionaries.
        model : str, optional
            The upstream engine identifier. Providers fall back to their own
            default when omitted.
        **kwargs : Any
            Request options such as ``temperature`` and ``max_tokens``.

        Returns
        -------
        Any
            The provider's native response object.

        Raises
        ------
        UpstreamError
            If the provider rejects the request.
        """
        pass

    @abstractmethod
    def extract_content(self, response: Any) -> str:
        """Extracts the text content from a ``generate_response`` result."""
        pass

    @abstractmethod
    def stream_response(
        self, messages: List[Dict[str, Any]], model: Optional[str] = None, **kwargs: Any
    ) -> AsyncIterator[str]:
        """Streams the response as incremental text fragments.

        Implementations are async generators. Fragments are yielded in the
        order the provider sends them; concatenated, they form the reply.

        Raises
        ------
        UpstreamError
            If the provider rejects the request.
        """
        pass


class Relay(LLM):
    """Talks to the relay server's ``/api/chat`` endpoint over HTTP.

    Streaming replies are server-sent event frames decoded with
    :class:`~llamachat.streaming.SSEDecoder`. No deadline is applied unless
    ``timeout`` is given: a hung stream is waited on indefinitely.
    """

    def __init__(
        self,
        base_url: str = config.RELAY_URL,
        default_model: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.url = self.base_url + config.CHAT_PATH
        self.model = default_model
        self.client = client
        self.timeout = timeout

    @asynccontextmanager
    async def _client(self):
        if self.client is not None:
            yield self.client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    def _payload(self, messages, model, stream, options) -> Dict[str, Any]:
        payload = {"messages": messages, "stream": stream, **options}
        if model or self.model:
            payload["model"] = model or self.model
        return payload

    async def generate_response(self, messages, model=None, **kwargs):
        async with self._client() as client:
            response = await client.post(
                self.url, json=self._payload(messages, model, False, kwargs)
            )
        if not response.is_success:
            raise UpstreamError.from_response(response)
        return response.json()

    def extract_content(self, response: Any) -> str:
        if isinstance(response, dict):
            return response.get("content") or ""
        return str(response)

    async def stream_response(self, messages, model=None, **kwargs):
        payload = self._payload(messages, model, True, kwargs)
        async with self._client() as client:
            async with client.stream("POST", self.url, json=payload) as response:
                if not response.is_success:
                    await response.aread()
                    raise UpstreamError.from_response(response)
                decoder = SSEDecoder()
                async for chunk in response.aiter_bytes():
                    for fragment in decoder.feed(chunk):
                        yield fragment
                for fragment in decoder.flush():
                    yield fragment
                if not decoder.done:
                    logger.warning("Stream from %s closed before [DONE]", self.url)


class OpenRouter(LLM):
    """OpenRouter's OpenAI-compatible API, used by the relay server."""

    def __init__(self, default_model: str = config.OPENROUTER_MODEL):
        self.client = openai.AsyncOpenAI(
            base_url=config.OPENROUTER_BASE,
            api_key=os.environ["OPENROUTER_API_KEY"],
            default_headers={
                "HTTP-Referer": config.OPENROUTER_REFERER,
                "X-Title": config.OPENROUTER_TITLE,
            },
        )
        self.model = default_model

    async def generate_response(self, messages, model=None, **kwargs):
        try:
            return await self.client.chat.completions.create(
                messages=messages, model=model or self.model, **kwargs
            )
        except openai.APIStatusError as e:
            raise UpstreamError(e.response.text or e.message, e.status_code) from e
        except openai.APIError as e:
            raise UpstreamError(str(e)) from e

    def extract_content(self, response: Any) -> str:
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def stream_response(self, messages, model=None, **kwargs):
        stream = await self.generate_response(messages, model, stream=True, **kwargs)
        try:
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except openai.APIError as e:
            raise UpstreamError(str(e)) from e


class Echo(LLM):
    """Offline provider that answers with the user's own prompt."""

    def __init__(self, default_model: str = "echo-v1", delay: float = 0.05):
        self.model = default_model
        self.delay = delay

    async def generate_response(self, messages, model=None, **kwargs):
        await asyncio.sleep(self.delay)
        user_prompt = messages[-1]["content"] if messages else "No message provided"
        content = f"**Echo LLM - static response for testing**\n\n_Your prompt:_\n\n{user_prompt}"

        return {"content": content, "usage": None}

    def extract_content(self, response: Any) -> str:
        if isinstance(response, dict) and "content" in response:
            return response["content"]
        return str(response)

    async def stream_response(self, messages, model=None, **kwargs):
        content = self.extract_content(await self.generate_response(messages, model))
        for word in re.findall(r"\S+\s*|\s+", content):
            await asyncio.sleep(self.delay)
            yield word
