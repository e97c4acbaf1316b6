"""Anthropic-backed completion client for email replies.

Provides:
- ``get_anthropic_client(...)``: Factory for the ``AsyncAnthropic`` client.
  The caller owns the instance; nothing here is a module-level singleton.
- ``CompletionClient``: Generates one reply per inbound message through the
  retry executor and reports token usage and computed cost.
- ``classify_completion_error`` / ``categorize_completion_error``: Map SDK
  exceptions onto retry classes and typed failure categories.
"""

from __future__ import annotations

import time
from decimal import Decimal

import anthropic
import structlog
from anthropic import AsyncAnthropic

from llmbox.domain.errors import (
    AttemptTimeoutError,
    CompletionError,
    DeadlineExceededError,
    ErrorCategory,
    ErrorClass,
    RetryExhaustedError,
)
from llmbox.email.models import InboundMessage
from llmbox.email.parser import extract_latest_reply
from llmbox.llm.models import CompletionResult
from llmbox.llm.pricing import calculate_cost, estimate_cost, format_cost
from llmbox.llm.prompts import SYSTEM_PROMPT, format_user_content
from llmbox.observability.logging import body_preview
from llmbox.resilience.retry import DEFAULT_POLICY, RetryPolicy, execute

logger = structlog.get_logger()

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_MAX_TOKENS = 2000

_RETRYABLE_STATUS = frozenset({408, 409, 429})
_AUTH_STATUS = frozenset({401, 403})


def get_anthropic_client(api_key: str, timeout: float = 30.0) -> AsyncAnthropic:
    """Create an ``AsyncAnthropic`` client.

    SDK-level retries are disabled; the retry executor owns the retry budget.

    Args:
        api_key: Anthropic API key.
        timeout: Transport timeout in seconds for a single request.

    Returns:
        Configured async Anthropic client instance.
    """
    return AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=0)


def classify_completion_error(exc: BaseException) -> ErrorClass:
    """Decide whether a failed completion call is worth retrying.

    Connection failures and timeouts, 408, 409, 429 and any 5xx are
    retryable.  Everything else, including auth and malformed requests, is
    fatal.
    """
    if isinstance(exc, anthropic.APIConnectionError):
        return ErrorClass.RETRYABLE
    if isinstance(exc, anthropic.APIStatusError):
        status = exc.status_code
        if status in _RETRYABLE_STATUS or status >= 500:
            return ErrorClass.RETRYABLE
        if status in _AUTH_STATUS:
            logger.critical(
                "completion_auth_error",
                status_code=status,
                error=str(exc),
            )
        return ErrorClass.FATAL
    return ErrorClass.FATAL


def categorize_completion_error(exc: BaseException) -> ErrorCategory:
    """Map a completion failure onto a typed ``ErrorCategory``."""
    if isinstance(exc, RetryExhaustedError) and exc.last_error is not None:
        return categorize_completion_error(exc.last_error)
    if isinstance(exc, AttemptTimeoutError | DeadlineExceededError | anthropic.APITimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, anthropic.APIConnectionError):
        return ErrorCategory.NETWORK
    if isinstance(exc, anthropic.APIStatusError):
        status = exc.status_code
        if status in _AUTH_STATUS:
            return ErrorCategory.AUTH
        if status == 429:
            return ErrorCategory.RATE_LIMIT
        if status == 408:
            return ErrorCategory.TIMEOUT
        if status >= 500 or status == 409:
            return ErrorCategory.SERVER
        return ErrorCategory.MALFORMED
    return ErrorCategory.UNKNOWN


def _status_code(exc: BaseException) -> int | None:
    if isinstance(exc, RetryExhaustedError) and exc.last_error is not None:
        return _status_code(exc.last_error)
    if isinstance(exc, anthropic.APIStatusError):
        return exc.status_code
    return None


class CompletionClient:
    """Generate email replies with the Anthropic Messages API.

    Args:
        client: An ``AsyncAnthropic`` instance (or a test double with the same
            ``messages.create`` coroutine).
        model: Model ID used for every call.
        max_tokens: Output token ceiling; also priced in full by ``estimate_cost``.
        policy: Retry policy applied to each call.
        system_prompt: Fixed system prompt.
    """

    def __init__(
        self,
        client: AsyncAnthropic,
        *,
        model: str = DEFAULT_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        policy: RetryPolicy = DEFAULT_POLICY,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self._client = client
        self.model = model
        self.max_tokens = max_tokens
        self._policy = policy
        self._system_prompt = system_prompt

    def _user_content(self, message: InboundMessage) -> str:
        return format_user_content(message, extract_latest_reply(message.body_text))

    def estimate_cost(self, message: InboundMessage) -> Decimal:
        """Conservative cost of answering *message*, used for the quota reservation."""
        prompt_text = self._system_prompt + self._user_content(message)
        return estimate_cost(self.model, prompt_text, self.max_tokens)

    async def complete(
        self,
        message: InboundMessage,
        *,
        deadline: float | None = None,
    ) -> CompletionResult:
        """Generate a reply to *message*.

        Args:
            message: The inbound message to answer.
            deadline: Absolute event-loop time after which no attempt starts.

        Returns:
            The reply text with token usage, computed cost, and latency.

        Raises:
            CompletionError: The call failed fatally or exhausted its retries.
        """
        user_content = self._user_content(message)

        async def _call() -> anthropic.types.Message:
            return await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=[
                    {
                        "type": "text",
                        "text": self._system_prompt,
                        "cache_control": {"type": "ephemeral"},
                    }
                ],
                messages=[{"role": "user", "content": user_content}],
            )

        logger.info(
            "completion_started",
            model=self.model,
            body_preview=body_preview(user_content),
        )
        started = time.perf_counter()
        try:
            response = await execute(
                _call,
                classify_completion_error,
                self._policy,
                operation_name="completion_call",
                deadline=deadline,
            )
        except (RetryExhaustedError, DeadlineExceededError, anthropic.AnthropicError) as exc:
            category = categorize_completion_error(exc)
            logger.error(
                "completion_failed",
                model=self.model,
                category=category,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise CompletionError(category, str(exc), _status_code(exc)) from exc

        latency_ms = round((time.perf_counter() - started) * 1000, 3)
        content = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        model = getattr(response, "model", None) or self.model
        cost = calculate_cost(model, input_tokens, output_tokens)

        logger.info(
            "completion_succeeded",
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=format_cost(cost),
            latency_ms=latency_ms,
            response_length=len(content),
        )
        return CompletionResult(
            content=content,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            latency_ms=latency_ms,
        )
