"""FastAPI endpoint receiving SendGrid Inbound Parse deliveries.

SendGrid posts each inbound email as ``multipart/form-data``.  The endpoint
hands the form to the pipeline orchestrator and always answers 200, so the
transport never redelivers a message because of an internal failure.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from llmbox.domain.types import AckStatus
from llmbox.pipeline.orchestrator import INTERNAL_ERROR_DETAIL, PipelineOrchestrator

logger = structlog.get_logger()

router = APIRouter()


@router.post("/webhooks/email")
async def inbound_email_webhook(request: Request) -> JSONResponse:
    """Receive one inbound email and run it through the reply pipeline.

    Args:
        request: The incoming FastAPI request carrying the parsed email form.

    Returns:
        JSON ``{"status", "messageId", "detail"}`` with HTTP 200.
    """
    orchestrator: PipelineOrchestrator = request.app.state.services["orchestrator"]
    logger.info(
        "webhook_received",
        content_type=request.headers.get("content-type", ""),
    )

    try:
        form = await request.form()
    except Exception:
        logger.exception("webhook_form_unreadable")
        return JSONResponse(
            content={
                "status": AckStatus.ERROR.value,
                "messageId": "",
                "detail": INTERNAL_ERROR_DETAIL,
            },
            status_code=200,
        )

    ack = await orchestrator.process(form)
    return JSONResponse(
        content={
            "status": ack.status.value,
            "messageId": ack.message_id,
            "detail": ack.detail,
        },
        status_code=ack.http_status,
    )
