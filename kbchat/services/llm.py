"""Completion client (OpenAI-compatible chat completions).

Upstream failures are mapped onto the error taxonomy so the caller sees
429/402 passthrough messages instead of SDK exceptions.
"""

from __future__ import annotations

from typing import AsyncIterator, Dict, List

from openai import APIError, APIStatusError, APITimeoutError, AsyncOpenAI

from kbchat.config.logger import app_logger
from kbchat.config.settings import settings
from kbchat.services.errors import (
    UpstreamError,
    UpstreamQuotaError,
    UpstreamRateLimitError,
)

_completion_client: AsyncOpenAI | None = None

MAX_ERROR_BODY_CHARS = 500


def get_completion_client() -> AsyncOpenAI:
    """Return a singleton async OpenAI client for the completion service."""
    global _completion_client
    if _completion_client is None:
        if not settings.OPENAI_API_KEY:
            raise UpstreamError("Completion service is not configured", detail="OPENAI_API_KEY is empty")
        _completion_client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL or None,
            timeout=settings.COMPLETION_TIMEOUT_SECONDS,
            # No SDK retries: a 429 surfaces to the caller as-is
            max_retries=settings.OPENAI_MAX_RETRIES,
        )
        app_logger.info("Completion client initialized")
    return _completion_client


def map_upstream_error(exc: Exception) -> UpstreamError:
    """Translate an SDK exception into the matching taxonomy error."""
    if isinstance(exc, APIStatusError):
        if exc.status_code == 429:
            return UpstreamRateLimitError(detail=str(exc))
        if exc.status_code == 402:
            return UpstreamQuotaError(detail=str(exc))
        try:
            body = exc.response.text
        except Exception:
            body = exc.message
        body = (body or exc.message)[:MAX_ERROR_BODY_CHARS]
        return UpstreamError(f"AI service error ({exc.status_code}): {body}", detail=body)
    if isinstance(exc, APITimeoutError):
        return UpstreamError("AI service timed out", detail=str(exc))
    return UpstreamError(detail=str(exc))


def _request_kwargs(messages: List[Dict[str, str]]) -> dict:
    return {
        "model": settings.OPENAI_MODEL,
        "messages": messages,
        "temperature": settings.OPENAI_TEMPERATURE,
        "max_tokens": settings.OPENAI_MAX_TOKENS,
    }


async def open_completion_stream(messages: List[Dict[str, str]]) -> AsyncIterator[str]:
    """Start a streaming completion and return an iterator of content fragments.

    The upstream request is issued before this returns, so status errors raise
    here rather than halfway through the iteration.
    """
    client = get_completion_client()
    try:
        stream = await client.chat.completions.create(stream=True, **_request_kwargs(messages))
    except APIError as exc:
        app_logger.error(f"Completion request failed: {exc}")
        raise map_upstream_error(exc) from exc

    return _iter_deltas(stream)


async def _iter_deltas(stream) -> AsyncIterator[str]:
    try:
        async for chunk in stream:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                yield content
    except APIError as exc:
        app_logger.error(f"Completion stream failed mid-way: {exc}")
        raise map_upstream_error(exc) from exc


async def complete(messages: List[Dict[str, str]]) -> str:
    """Non-streaming completion; returns the full answer text."""
    client = get_completion_client()
    try:
        completion = await client.chat.completions.create(**_request_kwargs(messages))
    except APIError as exc:
        app_logger.error(f"Completion request failed: {exc}")
        raise map_upstream_error(exc) from exc

    if not completion.choices:
        return ""
    return completion.choices[0].message.content or ""
