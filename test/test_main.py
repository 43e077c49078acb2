"""
Tests for application wiring: health, request correlation and logging.
"""

import json
import logging

import pytest
from fastapi import status
from httpx import AsyncClient

from sigcore.shared.logging import StructuredFormatter, correlation_id_var


class TestApplication:
    @pytest.mark.asyncio
    async def test_health(self, async_client: AsyncClient) -> None:
        response = await async_client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, async_client: AsyncClient) -> None:
        response = await async_client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_request_id_generated(self, async_client: AsyncClient) -> None:
        first = await async_client.get("/health")
        second = await async_client.get("/health")

        assert first.headers["X-Request-ID"]
        assert first.headers["X-Request-ID"] != second.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_validation_error_shape(self, async_client: AsyncClient) -> None:
        response = await async_client.get(
            "/api/conversations/not-a-uuid/messages",
            headers={"X-Workspace-Id": "00000000-0000-0000-0000-000000000001"},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        detail = response.json()["detail"]
        assert detail["code"] == "VALIDATION_ERROR"
        assert detail["errors"][0]["field"] == "path.conversation_id"


class TestStructuredFormatter:
    def test_extra_fields_and_correlation_id(self) -> None:
        record = logging.LogRecord("sigcore.test", logging.INFO, __file__, 1, "Webhook processed", None, None)
        record.provider = "twilio"
        token = correlation_id_var.set("req-9")
        try:
            payload = json.loads(StructuredFormatter().format(record))
        finally:
            correlation_id_var.reset(token)

        assert payload["message"] == "Webhook processed"
        assert payload["level"] == "INFO"
        assert payload["provider"] == "twilio"
        assert payload["correlation_id"] == "req-9"
