"""OpenAI image and text generation over the shared httpx client.

``generate_image`` returns either the hosted image URL or a
``data:image/png;base64,...`` URI, whichever the API responded with, or
None when the response carried no image. Transient failures (429, 5xx,
timeouts, connection errors) are retried with exponential backoff;
everything else surfaces as ``UpstreamGenerationError``.
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable

import httpx

from citybingo.config import Settings, get_settings
from citybingo.services.errors import EmptyResult, UpstreamGenerationError
from citybingo.services.prompt_builder import (
    build_description_messages,
    build_items_messages,
    build_image_prompt,
    fallback_description,
    parse_item_texts,
)
from citybingo.services.retry import BackoffPolicy, RetryExhausted, RetryState, retry_with_backoff

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class _RetryableStatus(Exception):
    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


class OpenAIGenerator:
    """The external generation collaborator used by the orchestrator."""

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: Callable[[], httpx.AsyncClient] | None = None,
        policy: BackoffPolicy | None = None,
        sleep=None,
    ):
        self.settings = settings or get_settings()
        self._http_client = http_client
        self.policy = policy or BackoffPolicy(
            max_attempts=self.settings.OPENAI_MAX_ATTEMPTS,
            base_delay=self.settings.OPENAI_RETRY_BASE_SECONDS,
        )
        self._sleep = sleep

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client()
        from citybingo.services.http_client_manager import get_http_client
        return get_http_client("openai")

    def _headers(self) -> dict[str, str]:
        if not self.settings.OPENAI_API_KEY:
            raise UpstreamGenerationError("OPENAI_API_KEY is not configured")
        return {
            "Authorization": f"Bearer {self.settings.OPENAI_API_KEY}",
            "Content-Type": "application/json",
            "X-Request-ID": f"bingo-{uuid.uuid4().hex[:12]}",
        }

    async def _post(self, path: str, payload: dict[str, Any], label: str) -> dict[str, Any]:
        url = f"{self.settings.OPENAI_BASE_URL.rstrip('/')}{path}"
        headers = self._headers()

        async def _call(attempt: int) -> dict[str, Any]:
            resp = await self._client().post(url, headers=headers, json=payload)
            if resp.status_code in RETRYABLE_STATUS:
                raise _RetryableStatus(resp)
            resp.raise_for_status()
            return resp.json()

        state = RetryState()
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        try:
            return await retry_with_backoff(
                _call,
                self.policy,
                retry_on=(_RetryableStatus, httpx.TimeoutException, httpx.TransportError),
                label=label,
                state=state,
                **kwargs,
            )
        except RetryExhausted as e:
            last = state.last_error
            if isinstance(last, _RetryableStatus):
                body = last.response.text[:300] if last.response.text else ""
                msg = f"OpenAI API error {last.response.status_code} after {state.attempts} attempts"
                raise UpstreamGenerationError(msg, detail=body) from e
            raise UpstreamGenerationError(
                f"OpenAI request failed after {state.attempts} attempts: {type(last).__name__}",
                detail=str(last),
            ) from e
        except httpx.HTTPStatusError as e:
            body = e.response.text[:300] if e.response.text else ""
            raise UpstreamGenerationError(
                f"OpenAI API error {e.response.status_code}", detail=body,
            ) from e
        except ValueError as e:
            raise UpstreamGenerationError("OpenAI returned a non-JSON response") from e

    async def generate_image(self, text: str, context: dict[str, Any] | None = None) -> str | None:
        """Generate an image for *text*; returns a URL, a data URI, or None."""
        context = context or {}
        prompt = build_image_prompt(
            text,
            context.get("city_name") or context.get("city_id", ""),
            description=context.get("description"),
            style_hints=context.get("style_hints"),
        )
        payload = {
            "model": self.settings.OPENAI_IMAGE_MODEL,
            "prompt": prompt,
            "size": self.settings.OPENAI_IMAGE_SIZE,
            "n": 1,
        }
        started = time.monotonic()
        data = await self._post("/images/generations", payload, label=f'image "{text[:40]}"')
        logger.info(
            'OpenAI image generated in %.1fs for "%s"', time.monotonic() - started, text[:40],
        )
        return extract_image_source(data)

    async def generate_description(self, text: str, city_name: str) -> str:
        """Short description for an item; falls back to a stock sentence on failure."""
        payload = {
            "model": self.settings.OPENAI_TEXT_MODEL,
            "messages": build_description_messages(text, city_name),
            "max_tokens": 150,
            "temperature": 0.8,
        }
        try:
            data = await self._post("/chat/completions", payload, label=f'description "{text[:40]}"')
            content = data["choices"][0]["message"]["content"]
        except (UpstreamGenerationError, KeyError, IndexError, TypeError) as e:
            logger.warning('Description generation failed for "%s": %s', text[:40], e)
            return fallback_description(text, city_name)
        return (content or "").strip() or fallback_description(text, city_name)

    async def generate_items(self, city_name: str, theme: str | None = None, count: int = 24) -> list[str]:
        """Texts for a fresh set of bingo items in *city_name*.

        Raises ``UpstreamGenerationError`` when the API call fails and
        ``EmptyResult`` when the reply holds no usable items.
        """
        payload = {
            "model": self.settings.OPENAI_TEXT_MODEL,
            "messages": build_items_messages(city_name, theme, count),
            "response_format": {"type": "json_object"},
            "max_tokens": 1000,
            "temperature": 0.7,
        }
        data = await self._post("/chat/completions", payload, label=f"items for {city_name}")
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise EmptyResult(f"No item list returned for {city_name}") from e

        texts = parse_item_texts(content)
        if not texts:
            raise EmptyResult(f"No item list returned for {city_name}")
        logger.info("Generated %d bingo items for %s", len(texts), city_name)
        return texts[:count]


def extract_image_source(data: dict[str, Any]) -> str | None:
    """Pull the URL or base64 payload out of an images/generations response."""
    entries = data.get("data") or []
    if not entries:
        return None
    first = entries[0] or {}
    if first.get("url"):
        return first["url"]
    if first.get("b64_json"):
        return f"data:image/png;base64,{first['b64_json']}"
    return None
