"""LLM client -- multi-provider completion wrapper (Anthropic + OpenAI).

Every call returns a normalised ``Completion`` whose ``stop_reason`` is one
of ``complete`` / ``max_tokens`` / ``other``; ``max_tokens`` is the hard
truncation signal the code generator acts on.  Request timeouts scale with
the requested output size.
"""

import asyncio
import logging
from typing import Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field

from app.errors import GenerationError, LLMTimeoutError

logger = logging.getLogger(__name__)

StopReason = Literal["complete", "max_tokens", "other"]

# ── Shared HTTP client (connection pooling) ─────────────────────────────────

_client: httpx.AsyncClient | None = None


def _get_client() -> httpx.AsyncClient:
    """Return (or create) the shared httpx client for LLM API calls."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=300.0)
    return _client


async def close_client() -> None:
    """Close the shared LLM HTTP client.  Called during CLI shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class Usage(BaseModel):
    model_config = ConfigDict(frozen=True)

    input_tokens: int = 0
    output_tokens: int = 0


class Completion(BaseModel):
    """Normalised response of one completion call."""

    model_config = ConfigDict(frozen=True)

    text: str
    stop_reason: StopReason = "complete"
    usage: Usage = Field(default_factory=Usage)
    model: str = ""


# ---------------------------------------------------------------------------
# Retry configuration
# ---------------------------------------------------------------------------

MAX_RETRIES = 4
RETRY_BACKOFF_BASE = 2.0  # seconds, exponential: 2, 4, 8, 16
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 529})


def _compute_wait(exc: httpx.HTTPStatusError | None, attempt: int) -> float:
    """Return seconds to wait before retrying.

    Prefers the ``retry-after`` header for 429s. Falls back to exponential
    backoff capped at 90 seconds.
    """
    if exc is not None and exc.response is not None:
        retry_after = exc.response.headers.get("retry-after")
        if retry_after:
            try:
                return min(float(retry_after), 120.0)
            except (ValueError, TypeError):
                pass
    return min(RETRY_BACKOFF_BASE ** (attempt + 1), 90.0)


async def _retry_on_transient(
    coro_factory,
    *,
    max_retries: int = MAX_RETRIES,
    backoff_base: float = RETRY_BACKOFF_BASE,
):
    """Retry a coroutine factory on transient HTTP / transport errors.

    ``coro_factory`` is a zero-arg callable that returns a new awaitable each
    time (so we can retry fresh).  Timeouts are not retried: the timeout is
    already sized to the request, so a second attempt would only double the
    worst-case latency.
    """
    last_exc: Exception | None = None
    for attempt in range(max_retries + 1):
        try:
            return await coro_factory()
        except httpx.TimeoutException:
            raise
        except httpx.TransportError as exc:
            last_exc = exc
            if attempt < max_retries:
                wait = min(backoff_base ** (attempt + 1), 90.0)
                logger.warning(
                    "LLM request %s (attempt %d/%d), retrying in %.1fs",
                    type(exc).__name__, attempt + 1, max_retries + 1, wait,
                )
                await asyncio.sleep(wait)
            else:
                raise
        except httpx.HTTPStatusError as exc:
            last_exc = exc
            if exc.response.status_code in _RETRYABLE_STATUS_CODES and attempt < max_retries:
                wait = _compute_wait(exc, attempt)
                logger.warning(
                    "LLM request %d (attempt %d/%d), retrying in %.1fs",
                    exc.response.status_code, attempt + 1, max_retries + 1, wait,
                )
                await asyncio.sleep(wait)
            else:
                raise
    raise last_exc  # type: ignore[misc]  # pragma: no cover


def _raise_for_status(response: httpx.Response, provider: str) -> None:
    """Raise ``HTTPStatusError`` for retryable codes, ``ValueError`` otherwise."""
    if response.status_code < 400:
        return
    if response.status_code in _RETRYABLE_STATUS_CODES:
        raise httpx.HTTPStatusError(
            f"{provider} API {response.status_code}",
            request=response.request,
            response=response,
        )
    try:
        err_msg = response.json().get("error", {}).get("message", response.text)
    except ValueError:
        err_msg = response.text
    raise ValueError(f"{provider} API {response.status_code}: {err_msg}")


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_API_VERSION = "2023-06-01"

_ANTHROPIC_STOP: dict[str, StopReason] = {
    "end_turn": "complete",
    "stop_sequence": "complete",
    "max_tokens": "max_tokens",
}


def _anthropic_headers(api_key: str) -> dict:
    """Return standard Anthropic API headers."""
    return {
        "x-api-key": api_key,
        "anthropic-version": ANTHROPIC_API_VERSION,
        "Content-Type": "application/json",
    }


async def chat_anthropic(
    api_key: str,
    model: str,
    system_prompt: str,
    messages: list[dict],
    max_tokens: int = 2048,
    *,
    temperature: float = 0.2,
    timeout: float = 300.0,
    max_retries: int = MAX_RETRIES,
) -> Completion:
    """Send a request to the Anthropic Messages API."""

    async def _call() -> Completion:
        body: dict = {
            "model": model,
            "max_tokens": max_tokens,
            "system": system_prompt,
            "messages": messages,
            "temperature": temperature,
        }
        client = _get_client()
        response = await client.post(
            ANTHROPIC_MESSAGES_URL,
            headers=_anthropic_headers(api_key),
            json=body,
            timeout=timeout,
        )
        _raise_for_status(response, "Anthropic")

        data = response.json()
        usage = data.get("usage", {})
        text_parts = [
            block["text"] for block in data.get("content", []) if block.get("type") == "text"
        ]
        if not text_parts:
            raise ValueError("No text block in Anthropic API response")

        return Completion(
            text="\n".join(text_parts),
            stop_reason=_ANTHROPIC_STOP.get(data.get("stop_reason") or "", "other"),
            usage=Usage(
                input_tokens=usage.get("input_tokens", 0),
                output_tokens=usage.get("output_tokens", 0),
            ),
            model=data.get("model", model),
        )

    return await _retry_on_transient(_call, max_retries=max_retries)


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"

_OPENAI_STOP: dict[str, StopReason] = {
    "stop": "complete",
    "length": "max_tokens",
}


def _openai_headers(api_key: str) -> dict:
    """Return standard OpenAI API headers."""
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


async def chat_openai(
    api_key: str,
    model: str,
    system_prompt: str,
    messages: list[dict],
    max_tokens: int = 2048,
    *,
    temperature: float = 0.2,
    timeout: float = 300.0,
    max_retries: int = MAX_RETRIES,
) -> Completion:
    """Send a request to the OpenAI Chat Completions API."""
    oai_messages = [{"role": "system", "content": system_prompt}]
    oai_messages.extend(messages)

    body: dict = {
        "model": model,
        "messages": oai_messages,
        "temperature": temperature,
        # Newer models only accept max_completion_tokens
        "max_completion_tokens": max_tokens,
    }

    async def _call() -> Completion:
        client = _get_client()
        response = await client.post(
            OPENAI_CHAT_URL,
            headers=_openai_headers(api_key),
            json=body,
            timeout=timeout,
        )
        _raise_for_status(response, "OpenAI")

        data = response.json()
        choices = data.get("choices", [])
        if not choices:
            raise ValueError("Empty response from OpenAI API")

        content = choices[0].get("message", {}).get("content")
        if not content:
            raise ValueError("No content in OpenAI API response")

        usage = data.get("usage", {})
        return Completion(
            text=content,
            stop_reason=_OPENAI_STOP.get(choices[0].get("finish_reason") or "", "other"),
            usage=Usage(
                input_tokens=usage.get("prompt_tokens", 0),
                output_tokens=usage.get("completion_tokens", 0),
            ),
            model=data.get("model", model),
        )

    return await _retry_on_transient(_call, max_retries=max_retries)


# ---------------------------------------------------------------------------
# Injected client
# ---------------------------------------------------------------------------


def scaled_timeout(max_tokens: int, *, base_s: float, per_1k_s: float) -> float:
    """Timeout for a request asking for *max_tokens* of output."""
    return base_s + per_1k_s * (max(max_tokens, 0) / 1000.0)


class LLMClient:
    """Provider-agnostic completion client handed to the pipeline stages.

    Maps every failure onto the pipeline taxonomy: timeouts become
    ``LLMTimeoutError`` and any other failure ``GenerationError``.
    """

    def __init__(
        self,
        *,
        provider: str,
        api_key: str,
        temperature: float = 0.2,
        timeout_base_s: float = 60.0,
        timeout_per_1k_tokens_s: float = 8.0,
        max_retries: int = MAX_RETRIES,
    ) -> None:
        self.provider = provider
        self.api_key = api_key
        self.temperature = temperature
        self.timeout_base_s = timeout_base_s
        self.timeout_per_1k_tokens_s = timeout_per_1k_tokens_s
        self.max_retries = max_retries

    async def complete(
        self,
        *,
        model: str,
        system_prompt: str,
        messages: list[dict],
        max_tokens: int,
        temperature: float | None = None,
    ) -> Completion:
        timeout = scaled_timeout(
            max_tokens, base_s=self.timeout_base_s, per_1k_s=self.timeout_per_1k_tokens_s,
        )
        call = chat_openai if self.provider == "openai" else chat_anthropic
        logger.debug("LLM %s/%s max_tokens=%d timeout=%.0fs", self.provider, model, max_tokens, timeout)
        try:
            return await call(
                self.api_key,
                model,
                system_prompt,
                messages,
                max_tokens,
                temperature=self.temperature if temperature is None else temperature,
                timeout=timeout,
                max_retries=self.max_retries,
            )
        except httpx.TimeoutException as exc:
            raise LLMTimeoutError(
                f"LLM request to {model} timed out after {timeout:.0f}s", timeout_s=timeout,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise GenerationError(f"LLM request to {model} failed: {exc}", rule="LLM request") from exc
