"""LLM integration package for the email reply service.

Provides the Anthropic client factory, the completion client with retry and
error classification, the fixed prompt templates, and token pricing used for
quota estimates and usage metering.
"""

from llmbox.llm.client import (
    CompletionClient,
    categorize_completion_error,
    classify_completion_error,
    get_anthropic_client,
)
from llmbox.llm.models import CompletionResult
from llmbox.llm.pricing import calculate_cost, estimate_cost, format_cost
from llmbox.llm.prompts import SYSTEM_PROMPT, format_user_content

__all__ = [
    "SYSTEM_PROMPT",
    "CompletionClient",
    "CompletionResult",
    "calculate_cost",
    "categorize_completion_error",
    "classify_completion_error",
    "estimate_cost",
    "format_cost",
    "format_user_content",
    "get_anthropic_client",
]
