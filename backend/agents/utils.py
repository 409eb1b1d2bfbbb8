"""LLM client utilities for the planning collaborator.

This module provides:
- LLMClient: Wrapper around LiteLLM with retry logic and fallback model support
- extract_json_from_response: Tolerant extraction of a JSON object from LLM text
- MockLLMClient: Scripted client for tests
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

import litellm
import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings

logger = structlog.get_logger()


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Attributes:
        content: The text content of the response
        model: Model that produced the response
        input_tokens: Prompt token count
        output_tokens: Completion token count
        latency_ms: Wall-clock latency including retries
        cost: Estimated USD cost, 0.0 when the model is not priced
        raw_response: The original ModelResponse from LiteLLM
    """

    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0
    cost: float = 0.0
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """Wrapper around LiteLLM with retry logic and fallback.

    Retries on: RateLimitError (429), ServiceUnavailableError (500/502/503),
    Timeout errors.
    Does NOT retry on: AuthenticationError (401/403), BadRequestError (400).

    Attributes:
        default_model: Model to use if not specified
        fallback_model: Optional model tried once after the primary exhausts retries
        retry_attempts: Number of retry attempts for transient failures
        retry_delay: Base delay for exponential backoff in seconds
    """

    def __init__(
        self,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
        request_timeout: float | None = None,
    ) -> None:
        self.default_model = default_model or settings.planner_model
        self.fallback_model = fallback_model or settings.planner_fallback_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None else settings.llm_max_retries
        )
        self.retry_delay = retry_delay
        self.request_timeout = request_timeout or settings.llm_request_timeout_seconds

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Make an LLM call with retries and fallback.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to self.default_model)
            temperature: Sampling temperature
            max_tokens: Maximum tokens in response

        Returns:
            LLMResponse with content and usage

        Raises:
            AuthenticationError: If API key is invalid
            BadRequestError: If request is malformed
            Exception: After all retries and fallback exhausted
        """
        model = model or self.default_model
        start_time = time.time()
        last_exception: Exception | None = None

        for attempt in range(self.retry_attempts + 1):
            try:
                response = await self._make_request(messages, model, temperature, max_tokens)
                llm_response = self._parse_response(
                    response, model, int((time.time() - start_time) * 1000)
                )
                logger.info(
                    "llm_call_complete",
                    model=model,
                    input_tokens=llm_response.input_tokens,
                    output_tokens=llm_response.output_tokens,
                    latency_ms=llm_response.latency_ms,
                    attempt=attempt + 1,
                )
                return llm_response
            except (RateLimitError, ServiceUnavailableError, Timeout) as e:
                last_exception = e
                if attempt < self.retry_attempts:
                    delay = min(self.retry_delay * (2**attempt), 4.0)
                    logger.warning(
                        "llm_call_retry",
                        model=model,
                        attempt=attempt + 1,
                        max_retries=self.retry_attempts,
                        error_type=type(e).__name__,
                        retry_delay=delay,
                    )
                    await self._async_sleep(delay)
                else:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model,
                        attempts=self.retry_attempts + 1,
                        error=str(e),
                    )
            except (AuthenticationError, BadRequestError) as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

        if self.fallback_model and self.fallback_model != model:
            logger.warning(
                "llm_fallback_attempt",
                primary_model=model,
                fallback_model=self.fallback_model,
                primary_error=str(last_exception),
            )
            try:
                response = await self._make_request(
                    messages, self.fallback_model, temperature, max_tokens
                )
                return self._parse_response(
                    response, self.fallback_model, int((time.time() - start_time) * 1000)
                )
            except Exception as fallback_error:
                logger.error(
                    "llm_fallback_failed",
                    fallback_model=self.fallback_model,
                    error=str(fallback_error),
                )
                last_exception = last_exception or fallback_error

        raise last_exception or RuntimeError("LLM call failed after all retries")

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": self.request_timeout,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        return await acompletion(**kwargs)

    def _parse_response(self, response: ModelResponse, model: str, latency_ms: int) -> LLMResponse:
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        try:
            cost = float(litellm.completion_cost(completion_response=response) or 0.0)
        except Exception:
            # Unpriced or local models
            cost = 0.0
        return LLMResponse(
            content=choice.message.content or "",
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=latency_ms,
            cost=cost,
            raw_response=response,
        )

    async def _async_sleep(self, seconds: float) -> None:
        """Sleep between retries; a method so tests can patch it out."""
        await asyncio.sleep(seconds)


def _extract_balanced_json_objects(text: str) -> list[str]:
    """Extract balanced JSON object candidates from arbitrary text."""
    candidates: list[str] = []
    n = len(text)

    for start in range(n):
        if text[start] != "{":
            continue

        depth = 0
        in_string = False
        escaped = False

        for end in range(start, n):
            ch = text[end]

            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue

            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    candidates.append(text[start : end + 1])
                    break

    return candidates


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Extract a JSON object from an LLM response that may contain extra text.

    Tries, in order: the whole response, fenced code blocks, then balanced
    ``{...}`` spans in free-form text.

    Args:
        response: The full LLM response text

    Returns:
        Parsed JSON dict if found, None otherwise
    """

    def try_parse(candidate: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    if not response:
        return None

    parsed = try_parse(response.strip())
    if parsed is not None:
        return parsed

    for match in re.finditer(r"```(?:json)?\s*([\s\S]*?)\s*```", response, re.IGNORECASE):
        body = match.group(1).strip()
        parsed = try_parse(body)
        if parsed is not None:
            return parsed
        for candidate in _extract_balanced_json_objects(body):
            parsed = try_parse(candidate)
            if parsed is not None:
                return parsed

    for candidate in _extract_balanced_json_objects(response):
        parsed = try_parse(candidate)
        if parsed is not None:
            return parsed

    return None


class MockLLMClient(LLMClient):
    """Mock LLM client for testing without API calls.

    Responses may be LLMResponse objects, plain strings, or exceptions
    (raised when reached).

    Usage:
        >>> client = MockLLMClient(responses=['{"canParallelize": false}'])
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[LLMResponse | str | Exception] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(default_model=kwargs.pop("default_model", "mock"), **kwargs)
        self.responses = list(responses) if responses else []
        self.call_history: list[dict[str, Any]] = []
        self._response_index = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Return the next scripted response.

        Raises:
            IndexError: If no more responses are available
        """
        self.call_history.append(
            {
                "messages": messages,
                "model": model or self.default_model,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )

        if self._response_index >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[self._response_index]
        self._response_index += 1

        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            return LLMResponse(content=response, model=model or self.default_model)
        return response

    def reset(self) -> None:
        self._response_index = 0
        self.call_history.clear()
