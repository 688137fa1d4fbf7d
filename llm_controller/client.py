"""Default model transport over litellm.

The controller loop only needs a ``ModelCaller``:
``async (messages, response_format) -> str | dict``. This module supplies
one backed by ``litellm.acompletion``:

    from llm_controller.client import litellm_model_caller

    caller = litellm_model_caller("anthropic/claude-sonnet-4-5-20250929")
    loop = ControllerLoop(caller, registry, store)

Failures are classified into the ``LLMError`` family as they happen. Rate
limits and transient errors (including an empty reply) are retried with
jittered backoff; anything else moves on to the next fallback model, and
the last model's classified error is raised.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import litellm

from llm_controller.config import ControllerConfig
from llm_controller.errors import LLMError, LLMRateLimitError, LLMTransientError, wrap_error

logger = logging.getLogger(__name__)

litellm.suppress_debug_info = True

ModelCaller = Callable[[list[dict[str, Any]], "dict[str, Any] | None"], Awaitable["str | dict[str, Any]"]]

# Error classes worth another attempt on the same model.
RETRYABLE_ERRORS: tuple[type[LLMError], ...] = (LLMRateLimitError, LLMTransientError)


@dataclass
class LLMCallResult:
    """One completed model turn.

    Attributes:
        content: Reply text, never empty
        usage: prompt_tokens, completion_tokens, total_tokens
        cost: USD as reported by litellm (0.0 when unknown)
        model: The model that produced the reply, after any fallback
        finish_reason: Provider stop reason, "" when absent
        raw_response: The litellm response object. Excluded from repr.
    """

    content: str
    usage: dict[str, Any]
    cost: float
    model: str
    finish_reason: str = ""
    raw_response: Any = field(default=None, repr=False)


def exponential_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter, capped at *max_delay*."""
    delay = base_delay * (2 ** attempt) * random.uniform(0.5, 1.5)
    return min(delay, max_delay)


@dataclass
class RetryPolicy:
    """Per-model retry settings.

    Attributes:
        max_retries: Extra attempts after the first on a retryable error.
        base_delay: Starting backoff delay (seconds).
        max_delay: Cap on backoff delay (seconds).
        retry_on: Extra message substrings that also make an error retryable.
        on_retry: ``(attempt, error, delay)`` callback fired before each sleep.
    """

    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 30.0
    retry_on: list[str] | None = None
    on_retry: Callable[[int, LLMError, float], None] | None = None

    def should_retry(self, error: LLMError) -> bool:
        if isinstance(error, RETRYABLE_ERRORS):
            return True
        text = str(error).lower()
        return any(p.lower() in text for p in self.retry_on or ())

    def delay_for(self, attempt: int) -> float:
        return exponential_backoff(attempt, self.base_delay, self.max_delay)


def strip_fences(content: str) -> str:
    """Strip markdown code fences from a model reply."""
    content = content.strip()
    content = re.sub(r"^```(?:json|python|xml|text)?\s*\n?", "", content)
    content = re.sub(r"\n?\s*```\s*$", "", content)
    return content.strip()


def _is_thinking_model(model: str) -> bool:
    """Gemini 3/4 spend output budget on reasoning unless told otherwise."""
    lower = model.lower()
    return "gemini-3" in lower or "gemini-4" in lower


def _completion_kwargs(
    model: str,
    messages: list[dict[str, Any]],
    response_format: dict[str, Any] | None,
    timeout: int,
    api_base: str | None,
    extra: dict[str, Any],
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"model": model, "messages": messages, "timeout": timeout, **extra}
    if response_format is not None:
        kwargs["response_format"] = response_format
    if api_base is not None:
        kwargs["api_base"] = api_base
    if _is_thinking_model(model) and "thinking" not in extra:
        kwargs["thinking"] = {"type": "enabled", "budget_tokens": 0}
    return kwargs


def _reply_cost(response: Any) -> float:
    try:
        return float(litellm.completion_cost(completion_response=response))
    except Exception as exc:
        logger.debug("completion_cost unavailable: %s", exc)
        return 0.0


def _to_result(response: Any, model: str) -> LLMCallResult:
    choice = response.choices[0]
    content: str = choice.message.content or ""
    finish_reason: str = choice.finish_reason or ""
    if finish_reason == "length":
        raise LLMError(
            f"Model reply truncated after {len(content)} chars; raise max_tokens or shorten the context"
        )
    if not content.strip():
        raise LLMTransientError("Empty content from model")

    usage = {
        "prompt_tokens": response.usage.prompt_tokens,
        "completion_tokens": response.usage.completion_tokens,
        "total_tokens": response.usage.total_tokens,
    }
    cost = _reply_cost(response)
    logger.debug(
        "Model turn: model=%s tokens=%d cost=$%.6f finish=%s",
        model, usage["total_tokens"], cost, finish_reason,
    )
    return LLMCallResult(
        content=content,
        usage=usage,
        cost=cost,
        model=model,
        finish_reason=finish_reason,
        raw_response=response,
    )


async def _call_one_model(call_kwargs: dict[str, Any], policy: RetryPolicy) -> LLMCallResult:
    model = call_kwargs["model"]
    attempt = 0
    while True:
        try:
            result = _to_result(await litellm.acompletion(**call_kwargs), model)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = wrap_error(exc)
            if attempt >= policy.max_retries or not policy.should_retry(error):
                if error is exc:
                    raise
                raise error from exc
            delay = policy.delay_for(attempt)
            if policy.on_retry is not None:
                policy.on_retry(attempt, error, delay)
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %.1fs: %s",
                model, attempt + 1, policy.max_retries + 1, type(error).__name__, delay, error,
            )
            await asyncio.sleep(delay)
            attempt += 1
            continue
        if attempt:
            logger.info("%s succeeded after %d retries", model, attempt)
        return result


async def acall_llm(
    model: str,
    messages: list[dict[str, Any]],
    *,
    response_format: dict[str, Any] | None = None,
    timeout: int = 60,
    api_base: str | None = None,
    retry: RetryPolicy | None = None,
    fallback_models: list[str] | None = None,
    **kwargs: Any,
) -> LLMCallResult:
    """Request one model turn, retrying and falling back as needed.

    Args:
        model: litellm model string, e.g. "gpt-4o" or "anthropic/claude-sonnet-4-5-20250929"
        messages: Chat messages in OpenAI format
        response_format: Structured-output payload passed through to litellm
        timeout: Request timeout in seconds
        api_base: Optional API base URL (e.g. for OpenRouter)
        retry: Retry settings per model; defaults to two retries with backoff
        fallback_models: Models tried in order once ``model`` gives up
        **kwargs: Passed through to ``litellm.acompletion``

    Raises:
        LLMError: the classified failure of the last model tried.
    """
    policy = retry or RetryPolicy()
    candidates = [model, *(fallback_models or [])]
    for index, candidate in enumerate(candidates):
        call_kwargs = _completion_kwargs(candidate, messages, response_format, timeout, api_base, kwargs)
        try:
            return await _call_one_model(call_kwargs, policy)
        except LLMError as error:
            if index == len(candidates) - 1:
                raise
            logger.warning("Falling back from %s to %s: %s", candidate, candidates[index + 1], error)
    raise AssertionError("unreachable: candidates is never empty")


def litellm_model_caller(
    model: str | None = None,
    *,
    config: ControllerConfig | None = None,
    retry: RetryPolicy | None = None,
    fallback_models: list[str] | None = None,
    **kwargs: Any,
) -> ModelCaller:
    """Build a ``ModelCaller`` that returns the raw reply text of ``acall_llm``."""
    cfg = config or ControllerConfig.from_env()
    resolved_model = model or cfg.model

    async def _call(
        messages: list[dict[str, Any]],
        response_format: dict[str, Any] | None,
    ) -> str:
        result = await acall_llm(
            resolved_model,
            messages,
            response_format=response_format,
            timeout=cfg.timeout,
            retry=retry,
            fallback_models=fallback_models,
            **kwargs,
        )
        return result.content

    return _call
