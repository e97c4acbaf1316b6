"""Pydantic v2 models for completion service output."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class CompletionResult(BaseModel):
    """Output of a successful completion call, with the metering it produced.

    ``cost`` is computed from the reported token usage, never estimated.
    """

    model_config = ConfigDict(frozen=True)

    content: str
    model: str
    input_tokens: int
    output_tokens: int
    cost: Decimal
    latency_ms: float

    @property
    def units_consumed(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}
