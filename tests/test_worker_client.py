"""Tests for the outbound stage worker client, using httpx.MockTransport."""

import json

import httpx
import pytest
from pydantic import ValidationError

from legal_ingest.orchestration.worker_client import StageWorkerRequest, StageWorkerResponse, WorkerClient
from legal_ingest.schemas import JobType


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestDispatch:

    def test_posts_request_and_returns_body_verbatim(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("x-internal-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"processed": 3, "custom": "kept"})

        result = WorkerClient(settings, client=_client(handler)).dispatch(JobType.EMBED, 25)

        assert result == {"processed": 3, "custom": "kept"}
        assert seen["url"] == "http://workers.test/api/workers/embed"
        assert seen["key"] == "ingest-secret"
        assert seen["body"] == {"concurrency_docs": 25}

    def test_cron_key_used_when_ingest_key_missing(self, settings):
        seen = {}

        def handler(request):
            seen["key"] = request.headers.get("x-internal-key")
            return httpx.Response(200, json={})

        cron_only = settings.model_copy(update={"internal_ingest_key": None})
        WorkerClient(cron_only, client=_client(handler)).dispatch(JobType.CHUNK, 5)
        assert seen["key"] == "cron-secret"

    def test_error_status_body_is_forwarded(self, settings):
        def handler(request):
            return httpx.Response(500, json={"error": "worker crashed"})

        result = WorkerClient(settings, client=_client(handler)).dispatch(JobType.CHUNK, 5)
        assert result == {"error": "worker crashed"}

    def test_non_json_response(self, settings):
        def handler(request):
            return httpx.Response(502, text="<html>Bad Gateway</html>")

        result = WorkerClient(settings, client=_client(handler)).dispatch(JobType.ENRICH, 5)
        assert result == {"status": 502}

    def test_transport_error_is_reported_not_raised(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = WorkerClient(settings, client=_client(handler)).dispatch(JobType.CHUNK, 5)
        assert result["stage"] == "chunk"
        assert "connection refused" in result["error"]

    def test_connect_error_is_retried(self, settings):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ConnectError("flaky", request=request)
            return httpx.Response(200, json={"processed": 1})

        retrying = settings.model_copy(update={"worker_retry_attempts": 2})
        result = WorkerClient(retrying, client=_client(handler)).dispatch(JobType.CHUNK, 5)
        assert result == {"processed": 1}
        assert calls["n"] == 2

    @pytest.mark.parametrize(
        "error_cls", [httpx.ReadTimeout, httpx.WriteError, httpx.RemoteProtocolError]
    )
    def test_possibly_delivered_request_is_sent_once(self, settings, error_cls):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            raise error_cls("worker still busy", request=request)

        retrying = settings.model_copy(update={"worker_retry_attempts": 3})
        result = WorkerClient(retrying, client=_client(handler)).dispatch(JobType.CHUNK, 25)

        assert calls["n"] == 1
        assert result["stage"] == "chunk"
        assert "worker still busy" in result["error"]

    def test_absolute_endpoint(self, settings):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return httpx.Response(200, json={})

        custom = settings.model_copy(
            update={"worker_endpoints": {"chunk": "https://chunker.internal/run"}}
        )
        WorkerClient(custom, client=_client(handler)).dispatch(JobType.CHUNK, 5)
        assert seen["url"] == "https://chunker.internal/run"


class TestRecords:

    def test_request_rejects_zero(self):
        with pytest.raises(ValidationError):
            StageWorkerRequest(concurrency_docs=0)

    def test_response_defaults(self):
        response = StageWorkerResponse()
        assert response.processed == 0
        assert response.errors == []
