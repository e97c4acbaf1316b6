"""Resilience infrastructure: classifier-driven retries for external calls."""

from llmbox.resilience.retry import DEFAULT_POLICY, RetryPolicy, execute

__all__ = [
    "DEFAULT_POLICY",
    "RetryPolicy",
    "execute",
]
