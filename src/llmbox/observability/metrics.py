"""Prometheus metrics instrumentation for the reply pipeline.

Provides:
- ``setup_metrics(app)``: Attach prometheus-fastapi-instrumentator to a FastAPI
  app, exposing ``/metrics`` with HTTP request duration/count plus the pipeline
  metrics below.
- ``PIPELINE_OUTCOMES``: Counter of acknowledgments by outcome (ack status).
- ``ADMISSION_DECISIONS``: Counter of admission-control results.
- ``DELIVERY_ATTEMPTS``: Counter of delivery attempts by outcome.
- ``USAGE_COST_USD``: Counter of committed completion cost.
- ``QUOTA_OVERSHOOTS``: Counter of commits that pushed an account past its limit.
- ``STAGE_DURATION``: Histogram of per-stage durations.
"""

from __future__ import annotations

from fastapi import FastAPI
from prometheus_client import Counter, Histogram
from prometheus_fastapi_instrumentator import Instrumentator

PIPELINE_OUTCOMES: Counter = Counter(
    "llmbox_pipeline_outcomes_total",
    "Pipeline runs acknowledged to the inbound transport, by outcome",
    ["outcome"],
)

ADMISSION_DECISIONS: Counter = Counter(
    "llmbox_admission_decisions_total",
    "Admission-control decisions, by decision",
    ["decision"],
)

DELIVERY_ATTEMPTS: Counter = Counter(
    "llmbox_delivery_attempts_total",
    "Outbound delivery attempts, by outcome",
    ["outcome"],
)

USAGE_COST_USD: Counter = Counter(
    "llmbox_usage_cost_usd_total",
    "Committed completion cost in USD",
)

QUOTA_OVERSHOOTS: Counter = Counter(
    "llmbox_quota_overshoots_total",
    "Commits that left an account above its cost limit",
)

STAGE_DURATION: Histogram = Histogram(
    "llmbox_stage_duration_seconds",
    "Duration of pipeline stages",
    ["stage"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 20, 30, 60),
)


def setup_metrics(app: FastAPI) -> None:
    """Instrument *app* with Prometheus HTTP metrics and expose ``/metrics``.

    Excludes health/ready/metrics endpoints from instrumentation.

    Args:
        app: The FastAPI application to instrument.
    """
    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        excluded_handlers=["/health", "/ready", "/metrics"],
    ).instrument(app).expose(app, include_in_schema=False, should_gzip=True)
