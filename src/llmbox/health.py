"""Liveness and readiness probes.

- ``GET /health`` answers 200 whenever the process can serve a request.
- ``GET /ready`` answers 200 only when the pipeline can take traffic: the
  pipeline database has its tables, the orchestrator is wired, and the
  outbound HTTP client is open.  Otherwise 503 with the failing checks.
"""

from __future__ import annotations

import asyncio
import sqlite3
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from llmbox.store.schema import Database

OK = "ok"
FAIL = "fail"


def _probe_database(db: Database) -> None:
    with db.reading() as conn:
        conn.execute("SELECT COUNT(*) FROM idempotency_records").fetchone()


async def check_database(db: Database | None) -> str:
    """``ok`` when *db* can read the pipeline schema, else ``fail``."""
    if db is None:
        return FAIL
    try:
        await asyncio.to_thread(_probe_database, db)
    except sqlite3.Error:
        return FAIL
    return OK


def check_http_client(client: httpx.AsyncClient | None) -> str:
    if client is None or client.is_closed:
        return FAIL
    return OK


def register_health_routes(app: FastAPI) -> None:
    """Register ``/health`` and ``/ready`` on *app*.

    Readiness reads ``db``, ``orchestrator`` and ``http_client`` from
    ``app.state.services``.
    """

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/ready")
    async def ready(request: Request) -> JSONResponse:
        services: dict[str, Any] = request.app.state.services
        checks = {
            "database": await check_database(services.get("db")),
            "pipeline": OK if services.get("orchestrator") is not None else FAIL,
            "delivery": check_http_client(services.get("http_client")),
        }
        ready_now = all(result == OK for result in checks.values())
        return JSONResponse(
            content={"status": "ready" if ready_now else "not_ready", "checks": checks},
            status_code=200 if ready_now else 503,
        )
