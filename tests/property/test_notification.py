"""Tests for the best-effort notification client."""

import json

import httpx
import pytest

from media_pipeline.services.notification import NotificationClient
from tests.fakes import RecordingBackend


class TestNotification:
    """notify returns a boolean and never raises."""

    @pytest.mark.asyncio
    async def test_success(self, backend: RecordingBackend) -> None:
        client = backend.client()

        ok = await client.notify("job-1", "COMPLETED", "https://cdn.test/x.m3u8", {"metadata": {"a": 1}})

        assert ok is True
        request = backend.requests[0]
        assert request.method == "PATCH"
        assert str(request.url) == "http://backend.test/api/files/job-1/status"
        payload = json.loads(request.content)
        assert payload["status"] == "COMPLETED"
        assert payload["url"] == "https://cdn.test/x.m3u8"
        assert payload["metadata"] == {"a": 1}
        assert "updatedAt" in payload

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [302, 404, 500, 503])
    async def test_non_2xx_is_failure(self, status_code: int) -> None:
        client = RecordingBackend(status_code=status_code).client()

        assert await client.notify("job-1", "FAILED") is False

    @pytest.mark.asyncio
    async def test_network_error_is_failure(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = NotificationClient("http://backend.test", transport=httpx.MockTransport(refuse))

        assert await client.notify("job-1", "FAILED") is False

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self) -> None:
        def slow(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = NotificationClient(
            "http://backend.test", timeout=0.01, transport=httpx.MockTransport(slow)
        )

        assert await client.notify("job-1", "COMPLETED") is False

    def test_trailing_slash_in_base_url(self) -> None:
        client = NotificationClient("http://backend.test/")
        assert client.status_url("j") == "http://backend.test/api/files/j/status"

    @pytest.mark.asyncio
    async def test_batch_counts(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500 if "bad" in request.url.path else 204)

        client = NotificationClient("http://backend.test", transport=httpx.MockTransport(handler))

        counts = await client.notify_batch(
            [
                {"job_id": "good-1", "status": "COMPLETED", "url": "https://cdn.test/1"},
                {"job_id": "bad-1", "status": "FAILED"},
                {"job_id": "good-2", "status": "FAILED", "extra": {"error": {"code": "X"}}},
            ]
        )

        assert counts == {"successful": 2, "failed": 1}
