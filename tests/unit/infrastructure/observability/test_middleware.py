"""Unit tests for RequestLoggingMiddleware."""

from unittest.mock import patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from swapify.infrastructure.observability.middleware import RequestLoggingMiddleware


class TestRequestLoggingMiddleware:
    """Test suite for RequestLoggingMiddleware."""

    @pytest.fixture
    def app(self) -> FastAPI:
        app = FastAPI()
        app.add_middleware(RequestLoggingMiddleware)

        @app.get("/test")
        async def test_endpoint():
            return {"message": "test"}

        @app.get("/error")
        async def error_endpoint():
            raise ValueError("Test error")

        return app

    @pytest.fixture
    def client(self, app: FastAPI) -> TestClient:
        return TestClient(app, raise_server_exceptions=False)

    def test_successful_request_logs_completion(self, client: TestClient):
        with patch("swapify.infrastructure.observability.middleware.logger") as mock_logger:
            response = client.get("/test")

        assert response.status_code == 200
        mock_logger.info.assert_called_once()
        extra = mock_logger.info.call_args.kwargs["extra"]
        assert extra["method"] == "GET"
        assert extra["path"] == "/test"
        assert extra["status_code"] == 200
        assert extra["duration_ms"] >= 0

    def test_request_with_correlation_id_header(self, client: TestClient):
        response = client.get("/test", headers={"X-Correlation-ID": "cron-run-42"})
        assert response.headers["X-Correlation-ID"] == "cron-run-42"

    def test_request_without_correlation_id_header(self, client: TestClient):
        response = client.get("/test")
        assert len(response.headers["X-Correlation-ID"]) == 36

    def test_error_request_logs_exception(self, client: TestClient):
        with patch("swapify.infrastructure.observability.middleware.logger") as mock_logger:
            response = client.get("/error")

        assert response.status_code == 500
        mock_logger.exception.assert_called_once()
        assert mock_logger.exception.call_args.kwargs["extra"]["error_type"] == "ValueError"
