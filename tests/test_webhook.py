"""Tests for the /webhooks/email inbound-parse endpoint."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from llmbox.domain.models import Acknowledgment
from llmbox.domain.types import AckStatus, PipelineState
from llmbox.webhook import router

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_orchestrator() -> MagicMock:
    orchestrator = MagicMock()
    orchestrator.process = AsyncMock(
        return_value=Acknowledgment(
            status=AckStatus.SUCCESS,
            message_id="<reply-2@mail.example.com>",
            final_state=PipelineState.ACKNOWLEDGED,
        )
    )
    return orchestrator


@pytest.fixture()
def client(mock_orchestrator: MagicMock) -> TestClient:
    app = FastAPI()
    app.state.services = {"orchestrator": mock_orchestrator}
    app.include_router(router)
    return TestClient(app)


# ---------------------------------------------------------------------------
# Endpoint tests
# ---------------------------------------------------------------------------


class TestInboundEmailWebhook:
    """Tests for the /webhooks/email endpoint."""

    def test_success_returns_200_with_ack(
        self,
        client: TestClient,
        mock_orchestrator: MagicMock,
        sample_form: dict[str, str],
    ) -> None:
        response = client.post("/webhooks/email", data=sample_form)

        assert response.status_code == 200
        assert response.json() == {
            "status": "success",
            "messageId": "<reply-2@mail.example.com>",
            "detail": "",
        }
        form = mock_orchestrator.process.call_args.args[0]
        assert form["subject"] == "Weekend plans"
        assert form["from"] == '"Jane Sender" <Jane@Example.com>'

    def test_multipart_form_is_accepted(
        self,
        client: TestClient,
        mock_orchestrator: MagicMock,
        sample_form: dict[str, str],
    ) -> None:
        response = client.post(
            "/webhooks/email",
            data=sample_form,
            files={"attachment1": ("notes.txt", b"hello", "text/plain")},
        )

        assert response.status_code == 200
        form = mock_orchestrator.process.call_args.args[0]
        assert form["headers"] == sample_form["headers"]

    @pytest.mark.parametrize(
        ("status", "detail"),
        [
            (AckStatus.DUPLICATE, "Message already processed"),
            (AckStatus.REJECTED, "quota_exceeded"),
            (AckStatus.INVALID, "Missing required email fields"),
            (AckStatus.ERROR, "Internal error occurred"),
        ],
    )
    def test_every_outcome_returns_200(
        self,
        client: TestClient,
        mock_orchestrator: MagicMock,
        status: AckStatus,
        detail: str,
    ) -> None:
        mock_orchestrator.process.return_value = Acknowledgment(
            status=status,
            message_id="",
            final_state=PipelineState.ACKNOWLEDGED,
            detail=detail,
        )

        response = client.post("/webhooks/email", data={"from": "x"})

        assert response.status_code == 200
        assert response.json()["status"] == status.value
        assert response.json()["detail"] == detail
