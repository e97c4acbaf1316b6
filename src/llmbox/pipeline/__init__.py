"""Reply pipeline: forward-only run tracking and the orchestrator."""

from llmbox.pipeline.orchestrator import PipelineOrchestrator
from llmbox.pipeline.transitions import TERMINAL_STATES, TRANSITIONS, PipelineRun

__all__ = [
    "PipelineOrchestrator",
    "PipelineRun",
    "TERMINAL_STATES",
    "TRANSITIONS",
]
