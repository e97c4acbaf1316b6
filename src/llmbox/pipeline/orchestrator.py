"""End-to-end processing of one inbound email.

``PipelineOrchestrator.process`` drives a message through parsing,
deduplication, admission control, completion, metering, composition, and
delivery, and always returns an ``Acknowledgment`` for the inbound
transport, whatever happened along the way.
"""

from __future__ import annotations

import asyncio
import sqlite3
import time
from collections.abc import Callable, Mapping
from typing import Any

import structlog

from llmbox.domain.errors import (
    CompletionError,
    DeliveryError,
    InboundValidationError,
    UnknownReservationError,
)
from llmbox.domain.models import Acknowledgment
from llmbox.domain.types import AckStatus, IdempotencyDecision, PipelineState
from llmbox.email.client import DeliveryClient
from llmbox.email.models import InboundMessage
from llmbox.email.parser import parse_inbound
from llmbox.email.templates import (
    fallback_body_for_completion_error,
    fallback_body_for_rejection,
)
from llmbox.email.threading import ThreadComposer
from llmbox.llm.client import CompletionClient
from llmbox.llm.pricing import format_cost
from llmbox.observability.logging import body_preview, correlation_scope
from llmbox.observability.metrics import PIPELINE_OUTCOMES
from llmbox.observability.performance import PerformanceTracker
from llmbox.pipeline.transitions import PipelineRun
from llmbox.store.idempotency import IdempotencyGuard
from llmbox.store.ledger import UsageLedger

logger = structlog.get_logger()

INTERNAL_ERROR_DETAIL = "Internal error occurred"

DEFAULT_THRESHOLDS: dict[str, int] = {
    "webhook_parsing": 2000,
    "completion_call": 20000,
    "email_send": 5000,
}


class PipelineOrchestrator:
    """Run inbound messages through the reply pipeline.

    Every collaborator is injected; the orchestrator owns no clients or
    connections of its own.

    Args:
        guard: Idempotency guard keyed by message id.
        ledger: Usage ledger providing admission control and metering.
        completion: Completion client that generates replies.
        composer: Builds threaded outbound replies.
        delivery: Sends outbound replies.
        thresholds: Per-stage slow-operation thresholds in milliseconds.
        total_budget_ms: Soft budget for the whole run; only ever warned about.
        web_app_url: Base URL used in quota and billing fallback replies.
        completion_deadline_seconds: Deadline for the completion call
            including retries (``None`` = no deadline).
        delivery_deadline_seconds: Deadline for each delivery including retries.
        clock: Monotonic clock for stage timing.  Injected by tests.
    """

    def __init__(
        self,
        guard: IdempotencyGuard,
        ledger: UsageLedger,
        completion: CompletionClient,
        composer: ThreadComposer,
        delivery: DeliveryClient,
        *,
        thresholds: Mapping[str, int] | None = None,
        total_budget_ms: int = 25000,
        web_app_url: str = "https://llmbox.ai",
        completion_deadline_seconds: float | None = None,
        delivery_deadline_seconds: float | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._guard = guard
        self._ledger = ledger
        self._completion = completion
        self._composer = composer
        self._delivery = delivery
        self._thresholds = dict(thresholds or DEFAULT_THRESHOLDS)
        self._total_budget_ms = total_budget_ms
        self._web_app_url = web_app_url
        self._completion_deadline = completion_deadline_seconds
        self._delivery_deadline = delivery_deadline_seconds
        self._clock = clock

    async def process(self, form: Mapping[str, Any]) -> Acknowledgment:
        """Handle one inbound delivery.  Never raises.

        Args:
            form: Fields posted by the inbound transport.

        Returns:
            The acknowledgment to report back; ``http_status`` is always 200.
        """
        tracker = PerformanceTracker(clock=self._clock)
        run = PipelineRun(message_id="")
        try:
            with tracker.stage("webhook_parsing"):
                message = parse_inbound(form).unwrap()
        except InboundValidationError as exc:
            logger.warning("validation_error", error=str(exc), **exc.context)
            return self._acknowledge(run, tracker, AckStatus.INVALID, str(exc))
        except Exception:
            logger.exception("unexpected_error", stage="webhook_parsing")
            return self._acknowledge(run, tracker, AckStatus.ERROR, INTERNAL_ERROR_DETAIL)

        run = PipelineRun(message.message_id)
        with correlation_scope(message.message_id):
            logger.info(
                "email_parsed",
                sender=message.sender_address,
                recipient=message.recipient_address,
                subject=message.subject,
                body_preview=body_preview(message.body_text),
                has_in_reply_to=message.in_reply_to is not None,
                references_count=len(message.references_chain),
                parsing_ms=tracker.duration("webhook_parsing"),
            )
            try:
                return await self._handle(run, message, tracker)
            except Exception:
                logger.exception("unexpected_error", state=run.state)
                return self._acknowledge(run, tracker, AckStatus.ERROR, INTERNAL_ERROR_DETAIL)

    async def _handle(
        self,
        run: PipelineRun,
        message: InboundMessage,
        tracker: PerformanceTracker,
    ) -> Acknowledgment:
        if self._guard.admit(message.message_id) is IdempotencyDecision.DUPLICATE:
            return self._acknowledge(run, tracker, AckStatus.DUPLICATE, "Message already processed")
        run.advance(PipelineState.DEDUPLICATED)

        estimate = self._completion.estimate_cost(message)
        admission = self._ledger.check_and_reserve(
            message.sender_address, estimate, message.message_id
        )
        if not admission.admitted:
            run.advance(PipelineState.REJECTED)
            logger.info(
                "admission_rejected",
                account_id=admission.account.account_id,
                reason=admission.reason,
                estimated_cost=format_cost(estimate),
                detail=admission.detail,
            )
            body = fallback_body_for_rejection(
                admission.reason, admission.account, self._web_app_url
            )
            await self._send_fallback(message, body)
            return self._acknowledge(run, tracker, AckStatus.REJECTED, str(admission.reason))

        reservation_id = admission.reservation_id or ""
        run.advance(PipelineState.ADMITTED)
        run.advance(PipelineState.COMPLETING)

        try:
            with tracker.stage("completion_call"):
                result = await self._completion.complete(
                    message, deadline=self._deadline(self._completion_deadline)
                )
        except CompletionError as exc:
            self._ledger.release(reservation_id)
            await self._send_fallback(message, fallback_body_for_completion_error(exc.category))
            return self._acknowledge(
                run, tracker, AckStatus.ERROR, f"completion_failed:{exc.category}"
            )
        except Exception:
            self._ledger.release(reservation_id)
            raise

        try:
            self._ledger.commit(
                reservation_id,
                result.cost,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
                model=result.model,
            )
        except (UnknownReservationError, sqlite3.Error) as exc:
            # The reply already exists; metering failure must not block it.
            logger.error(
                "usage_commit_failed",
                reservation_id=reservation_id,
                cost=format_cost(result.cost),
                error=str(exc),
            )
        run.advance(PipelineState.METERED)

        outbound = self._composer.compose(message, result.content)
        run.advance(PipelineState.COMPOSED)

        run.advance(PipelineState.DELIVERING)
        try:
            with tracker.stage("email_send"):
                await self._delivery.deliver(
                    outbound,
                    deadline=self._deadline(self._delivery_deadline),
                    related_message_id=message.message_id,
                )
        except DeliveryError as exc:
            # Terminal: a fallback would go through the channel that just failed.
            logger.error(
                "reply_not_delivered",
                to=outbound.to_address,
                category=exc.category,
                attempts=len(exc.attempts),
            )
            return self._acknowledge(
                run, tracker, AckStatus.ERROR, f"delivery_failed:{exc.category}"
            )

        logger.info(
            "email_sent",
            to=outbound.to_address,
            subject=outbound.subject,
            in_reply_to=outbound.in_reply_to,
            cost=format_cost(result.cost),
        )
        return self._acknowledge(run, tracker, AckStatus.SUCCESS)

    async def _send_fallback(self, message: InboundMessage, body: str) -> bool:
        """Best-effort fallback reply.  Returns False if it could not be delivered."""
        outbound = self._composer.compose(message, body)
        try:
            await self._delivery.deliver(
                outbound,
                deadline=self._deadline(self._delivery_deadline),
                related_message_id=message.message_id,
            )
        except DeliveryError as exc:
            logger.error(
                "fallback_delivery_failed",
                to=outbound.to_address,
                category=exc.category,
                attempts=len(exc.attempts),
            )
            return False
        logger.info("fallback_sent", to=outbound.to_address)
        return True

    def _deadline(self, seconds: float | None) -> float | None:
        if seconds is None:
            return None
        return asyncio.get_running_loop().time() + seconds

    def _acknowledge(
        self,
        run: PipelineRun,
        tracker: PerformanceTracker,
        status: AckStatus,
        detail: str = "",
    ) -> Acknowledgment:
        if not run.is_terminal:
            run.acknowledge()
        PIPELINE_OUTCOMES.labels(outcome=status.value).inc()
        tracker.warn_on_slow_stages(self._thresholds)
        tracker.check_total_budget(self._total_budget_ms)
        logger.info(
            "processing_completed",
            status=status,
            detail=detail,
            stage_durations_ms=tracker.durations(),
            total_processing_time_ms=tracker.total_duration(),
        )
        return Acknowledgment(
            status=status,
            message_id=run.message_id,
            final_state=run.state,
            detail=detail,
        )
