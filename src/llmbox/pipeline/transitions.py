"""Forward-only state tracking for one pipeline run."""

from __future__ import annotations

from llmbox.domain.errors import InvalidTransitionError
from llmbox.domain.types import PipelineState

# Allowed forward moves.  Any pair not listed is invalid, except that every
# non-terminal state may short-circuit to ACKNOWLEDGED via ``acknowledge()``.
TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.RECEIVED: frozenset({PipelineState.DEDUPLICATED}),
    PipelineState.DEDUPLICATED: frozenset({PipelineState.ADMITTED, PipelineState.REJECTED}),
    PipelineState.ADMITTED: frozenset({PipelineState.COMPLETING}),
    PipelineState.REJECTED: frozenset({PipelineState.ACKNOWLEDGED}),
    PipelineState.COMPLETING: frozenset({PipelineState.METERED}),
    PipelineState.METERED: frozenset({PipelineState.COMPOSED}),
    PipelineState.COMPOSED: frozenset({PipelineState.DELIVERING}),
    PipelineState.DELIVERING: frozenset({PipelineState.ACKNOWLEDGED}),
    PipelineState.ACKNOWLEDGED: frozenset(),
}

TERMINAL_STATES: frozenset[PipelineState] = frozenset({PipelineState.ACKNOWLEDGED})


class PipelineRun:
    """Progress of a single inbound message through the pipeline.

    Usage::

        run = PipelineRun("<abc@example.com>")
        run.advance(PipelineState.DEDUPLICATED)
        run.advance(PipelineState.REJECTED)
        run.acknowledge()
    """

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        self._state = PipelineState.RECEIVED
        self._history: list[tuple[PipelineState, PipelineState]] = []

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def history(self) -> list[tuple[PipelineState, PipelineState]]:
        """Copy of the ``(from_state, to_state)`` moves, oldest first."""
        return list(self._history)

    def advance(self, target: PipelineState) -> PipelineState:
        """Move forward to *target*.

        Raises:
            InvalidTransitionError: *target* is not a forward move from the
                current state.
        """
        if target not in TRANSITIONS[self._state]:
            raise InvalidTransitionError(self._state, target)
        self._history.append((self._state, target))
        self._state = target
        return target

    def acknowledge(self) -> PipelineState:
        """Short-circuit to ``ACKNOWLEDGED`` from any non-terminal state."""
        if self.is_terminal:
            raise InvalidTransitionError(self._state, PipelineState.ACKNOWLEDGED)
        self._history.append((self._state, PipelineState.ACKNOWLEDGED))
        self._state = PipelineState.ACKNOWLEDGED
        return self._state
