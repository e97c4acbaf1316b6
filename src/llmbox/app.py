"""Application entry point for the inbound email webhook service.

Configures:
- **structlog** with JSON rendering (production) or colored console
  (development), with ERROR/CRITICAL events forwarded to Sentry
- **Explicit service wiring**: the SQLite store, Anthropic and HTTP clients,
  and the pipeline orchestrator are built once per process and injected
- **Prometheus** ``/metrics`` plus ``/health`` and ``/ready`` probes
- **Store sweep**: expired dedup records are purged and stale quota holds
  are released periodically
"""

from __future__ import annotations

import asyncio
import contextlib
import sqlite3
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

import httpx
import structlog
import uvicorn
from fastapi import FastAPI

from llmbox.config import Settings, get_settings, validate_credentials
from llmbox.email.client import DeliveryClient
from llmbox.email.threading import ThreadComposer
from llmbox.health import register_health_routes
from llmbox.llm.client import CompletionClient, get_anthropic_client
from llmbox.observability.logging import configure_logging
from llmbox.observability.metrics import setup_metrics
from llmbox.pipeline.orchestrator import PipelineOrchestrator
from llmbox.store.deliveries import DeliveryLog
from llmbox.store.idempotency import IdempotencyGuard
from llmbox.store.ledger import UsageLedger
from llmbox.store.schema import close_db, open_database
from llmbox.webhook import router as webhook_router

logger = structlog.get_logger()


def build_services(settings: Settings | None = None) -> dict[str, Any]:
    """Wire the process-wide collaborators of the reply pipeline.

    Opens the pipeline database and creates the idempotency guard, usage
    ledger, delivery log, Anthropic and HTTP clients, completion and delivery
    clients, thread composer, and the orchestrator that ties them together.

    Args:
        settings: Settings to wire from; defaults to ``get_settings()``.

    Returns:
        Services keyed by name, stored on ``app.state.services``.
    """
    if settings is None:
        settings = get_settings()

    services: dict[str, Any] = {"_settings": settings}

    db_path = settings.database_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = open_database(db_path)
    services["db"] = db

    guard = IdempotencyGuard(db, window_seconds=settings.idempotency_window_seconds)
    ledger = UsageLedger(
        db,
        free_tier_cost_limit=settings.free_tier_cost_limit_usd,
        overshoot_tolerance=settings.quota_overshoot_tolerance_usd,
        warning_ratio=settings.quota_warning_ratio,
    )
    delivery_log = DeliveryLog(db)
    services["idempotency_guard"] = guard
    services["ledger"] = ledger
    services["delivery_log"] = delivery_log

    anthropic_client = get_anthropic_client(
        settings.anthropic_api_key.get_secret_value(),
        timeout=settings.completion_timeout_seconds,
    )
    services["anthropic_client"] = anthropic_client
    completion = CompletionClient(
        anthropic_client,
        model=settings.completion_model,
        max_tokens=settings.completion_max_tokens,
        policy=settings.retry_policy(attempt_timeout=settings.completion_timeout_seconds),
    )

    http_client = httpx.AsyncClient(timeout=settings.delivery_timeout_seconds)
    services["http_client"] = http_client
    delivery = DeliveryClient(
        http_client,
        settings.sendgrid_api_key.get_secret_value(),
        policy=settings.retry_policy(attempt_timeout=settings.delivery_timeout_seconds),
        base_url=settings.sendgrid_base_url,
        delivery_log=delivery_log,
    )

    services["orchestrator"] = PipelineOrchestrator(
        guard,
        ledger,
        completion,
        ThreadComposer(from_address=settings.service_email_address or None),
        delivery,
        thresholds=settings.stage_thresholds(),
        total_budget_ms=settings.total_budget_ms,
        web_app_url=settings.web_app_url,
        completion_deadline_seconds=settings.completion_deadline_seconds,
        delivery_deadline_seconds=settings.delivery_deadline_seconds,
    )
    logger.info(
        "services_initialized",
        database_path=str(db_path),
        completion_model=settings.completion_model,
    )
    return services


async def sweep_stores_periodically(
    guard: IdempotencyGuard,
    ledger: UsageLedger,
    interval_seconds: float,
    stale_after: timedelta,
) -> None:
    """Purge expired idempotency records and release stale reservations.

    Runs every *interval_seconds*.  Reservations pending longer than
    *stale_after* are returned to their account.  A store error is logged
    and the loop keeps running.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(guard.purge_expired)
        except sqlite3.Error:
            logger.exception("idempotency_purge_failed")
        try:
            await asyncio.to_thread(ledger.release_stale, stale_after)
        except sqlite3.Error:
            logger.exception("stale_reservation_sweep_failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Run the store sweep while the app serves; release clients on exit.

    Shutdown order: sweep task, HTTP client, Anthropic client, database.
    """
    services: dict[str, Any] = app.state.services
    settings: Settings = app.state.settings

    sweep_task: asyncio.Task[None] | None = None
    guard = services.get("idempotency_guard")
    ledger = services.get("ledger")
    if guard is not None and ledger is not None:
        sweep_task = asyncio.create_task(
            sweep_stores_periodically(
                guard,
                ledger,
                settings.idempotency_gc_interval_seconds,
                timedelta(seconds=settings.reservation_stale_seconds),
            )
        )
    logger.info("lifespan_started", store_sweep=sweep_task is not None)
    yield

    if sweep_task is not None:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task

    http_client = services.get("http_client")
    if http_client is not None:
        await http_client.aclose()
    anthropic_client = services.get("anthropic_client")
    if anthropic_client is not None:
        await anthropic_client.close()
    db = services.get("db")
    if db is not None:
        close_db(db)
        logger.info("database_connection_closed")


def create_app(services: dict[str, Any]) -> FastAPI:
    """Create the FastAPI app with lifespan, webhook router, probes, and metrics.

    Args:
        services: The initialized services dict from ``build_services``.

    Returns:
        The app, ready for uvicorn or ``TestClient``.
    """
    fastapi_app = FastAPI(title="LLMBox Email Webhook", lifespan=lifespan)
    fastapi_app.state.services = services
    fastapi_app.state.settings = services.get("_settings") or get_settings()
    fastapi_app.include_router(webhook_router)
    register_health_routes(fastapi_app)
    setup_metrics(fastapi_app)
    return fastapi_app


async def main() -> None:
    """Main entry point: configure logging, wire services, and serve.

    1. Configure logging and Sentry
    2. Validate credentials (exits in production when any is missing)
    3. Build services and the FastAPI app
    4. Run uvicorn until shutdown
    """
    settings = get_settings()
    configure_logging(
        production=settings.production,
        log_level=settings.log_level,
        sentry_dsn=settings.sentry_dsn,
    )
    logger.info("application_starting", production=settings.production)

    validate_credentials(settings)

    services = build_services(settings)
    fastapi_app = create_app(services)

    config = uvicorn.Config(
        fastapi_app,
        host="0.0.0.0",
        port=settings.webhook_port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()


if __name__ == "__main__":
    asyncio.run(main())
