"""
Tests for Main Application endpoints.

Covers the root, metrics, request ids and validation-error handling wired
in app.main.
"""

from unittest.mock import patch

import pytest
from prometheus_client import generate_latest

from app.config import settings


class TestRootEndpoint:
    """Tests for GET /."""

    @pytest.mark.asyncio
    async def test_root(self, api_client):
        response = await api_client.get("/")

        assert response.status_code == 200
        assert response.json() == {
            "service": settings.api_title,
            "version": settings.api_version,
            "status": "running",
        }


class TestMetricsEndpoint:
    """Tests for GET /metrics."""

    @pytest.mark.asyncio
    async def test_prometheus_text(self, api_client, auth_headers):
        await api_client.post(
            "/v1/trials/consume",
            json={"action": "video_analysis", "fingerprint": "fp-metrics"},
            headers=auth_headers,
        )

        response = await api_client.get("/metrics")

        assert response.status_code == 200
        assert "trial_consumptions_total" in response.text

    @pytest.mark.asyncio
    async def test_disabled(self, api_client):
        with patch.object(settings, "metrics_enabled", False):
            response = await api_client.get("/metrics")

        assert response.status_code == 404


class TestValidationErrors:
    """Tests for the request validation handler."""

    @pytest.mark.asyncio
    async def test_invalid_body_returns_422(self, api_client, auth_headers):
        response = await api_client.post(
            "/v1/trials/consume", json={"fingerprint": "fp-1"}, headers=auth_headers
        )

        assert response.status_code == 422
        assert "detail" in response.json()


class TestRequestId:
    """Tests for the request-logging middleware."""

    @pytest.mark.asyncio
    async def test_echoes_caller_request_id(self, api_client):
        response = await api_client.get("/", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"

    @pytest.mark.asyncio
    async def test_assigns_request_id_when_missing(self, api_client):
        response = await api_client.get("/")

        assert len(response.headers["X-Request-ID"]) == 32


class TestRouteTemplateLabels:
    """HTTP metrics are labelled by route template, never by concrete path."""

    @pytest.mark.asyncio
    async def test_path_parameters_not_exported(self, api_client, auth_headers):
        for fingerprint in ("fp-secret-aaa", "fp-secret-bbb"):
            await api_client.get(f"/v1/trials/{fingerprint}", headers=auth_headers)

        text = (await api_client.get("/metrics")).text

        assert 'endpoint="/v1/trials/{fingerprint}"' in text
        assert "fp-secret" not in text

    @pytest.mark.asyncio
    async def test_label_names_render_plainly(self, api_client):
        await api_client.get("/")

        text = generate_latest().decode()

        assert 'endpoint="/"' in text
        assert "MetricLabels." not in text

    @pytest.mark.asyncio
    async def test_unrouted_path(self, api_client):
        await api_client.get("/no/such/fp-secret-ccc")

        text = generate_latest().decode()

        assert 'endpoint="unmatched"' in text
        assert "fp-secret-ccc" not in text

    def test_template_from_scope(self):
        from app.main import _route_template

        scope = {
            "path": "/v1/devices/3f2b/sessions",
            "endpoint": object(),
            "path_params": {"device_id": "3f2b"},
        }

        assert _route_template(scope) == "/v1/devices/{device_id}/sessions"

    def test_template_without_route(self):
        from app.main import _route_template

        assert _route_template({"path": "/v1/trials/fp-1"}) == "unmatched"
