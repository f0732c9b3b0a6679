"""Tests for the authentication, tracing, logging and metrics middleware."""

from __future__ import annotations

import json
import logging
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

from stageflow_api.dependencies import get_db_session
from stageflow_api.middleware.auth import is_public_path
from stageflow_api.middleware.json_formatter import JSONFormatter
from stageflow_api.middleware.prometheus import normalise_path
from stageflow_api.middleware.rbac import ROLE_PERMISSIONS, Permission, Role, parse_role, role_has_permission
from stageflow_api.middleware.trace_context import TraceLoggingFilter, parse_traceparent

_TRACE_ID = "4bf92f3577b34da6a3ce929d0e0e4736"
_PARENT_SPAN = "00f067aa0ba902b7"


@pytest.fixture()
def client(app_factory, client_for):
    return client_for(app_factory())


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuthentication:
    @pytest.mark.parametrize(
        "path",
        ["/api/v1/health", "/ready", "/metrics", "/api/v1/billing/webhooks", "/docs", "/docs/oauth2-redirect"],
    )
    def test_public_paths(self, path: str) -> None:
        assert is_public_path(path)

    @pytest.mark.parametrize("path", ["/api/v1/webhooks/trigger", "/api/v1/webhooks/retries/stats", "/api/v1/healthz"])
    def test_protected_paths(self, path: str) -> None:
        assert not is_public_path(path)

    @pytest.mark.asyncio
    async def test_non_bearer_scheme_is_401(self, client):
        resp = await client.get("/api/v1/webhooks/retries/stats", headers={"Authorization": "Basic dXNlcjpwdw=="})
        assert resp.status_code == 401
        assert "Bearer" in resp.json()["detail"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", ["garbage", "sf1.only-two", "sf2.abc.def", "sf1.@@@.deadbeef"])
    async def test_malformed_tokens_are_401(self, client, token: str):
        resp = await client.get("/api/v1/webhooks/retries/stats", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json() == {"detail": "Invalid token"}

    @pytest.mark.asyncio
    async def test_token_from_the_future_is_401(self, client, make_token):
        token = make_token(issued_in=3600, expires_in=7200)
        resp = await client.get("/api/v1/webhooks/retries/stats", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_non_ascii_token_is_401(self, client):
        resp = await client.get(
            "/api/v1/webhooks/retries/stats",
            headers={"Authorization": "Bearer sf1.abc.éé".encode("latin-1")},
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_cors_preflight_needs_no_token(self, client):
        resp = await client.options(
            "/api/v1/webhooks/trigger",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "authorization,content-type",
            },
        )
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"

    @pytest.mark.asyncio
    async def test_unauthenticated_response_carries_cors_headers(self, client):
        resp = await client.get("/api/v1/webhooks/retries/stats", headers={"Origin": "http://localhost:3000"})
        assert resp.status_code == 401
        assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"


class TestRoles:
    def test_hierarchy_is_cumulative(self) -> None:
        assert ROLE_PERMISSIONS[Role.VIEWER] <= ROLE_PERMISSIONS[Role.OPERATOR]
        assert ROLE_PERMISSIONS[Role.OPERATOR] <= ROLE_PERMISSIONS[Role.ENGINEER]
        assert ROLE_PERMISSIONS[Role.ENGINEER] <= ROLE_PERMISSIONS[Role.ADMIN]

    def test_only_admin_manages_retries(self) -> None:
        holders = {role for role in Role if role_has_permission(role, Permission.MANAGE_WEBHOOK_RETRIES)}
        assert holders == {Role.ADMIN}

    def test_service_can_trigger_but_not_manage(self) -> None:
        assert role_has_permission(Role.SERVICE, Permission.TRIGGER_WEBHOOKS)
        assert not role_has_permission(Role.SERVICE, Permission.MANAGE_WEBHOOK_RETRIES)

    def test_parse_role(self) -> None:
        assert parse_role(" Admin ") is Role.ADMIN
        with pytest.raises(ValueError):
            parse_role("root")


# ---------------------------------------------------------------------------
# Tracing
# ---------------------------------------------------------------------------


class TestTraceContext:
    def test_parse_valid_traceparent(self) -> None:
        assert parse_traceparent(f"00-{_TRACE_ID}-{_PARENT_SPAN}-01") == (_TRACE_ID, _PARENT_SPAN)

    @pytest.mark.parametrize(
        "header",
        [
            "",
            "garbage",
            f"ff-{_TRACE_ID}-{_PARENT_SPAN}-01",
            f"00-{'0' * 32}-{_PARENT_SPAN}-01",
            f"00-{_TRACE_ID}-{'0' * 16}-01",
            f"00-{_TRACE_ID[:-1]}-{_PARENT_SPAN}-01",
        ],
    )
    def test_parse_invalid_traceparent(self, header: str) -> None:
        assert parse_traceparent(header) == ("", "")

    @pytest.mark.asyncio
    async def test_incoming_trace_id_echoed(self, client):
        resp = await client.get("/api/v1/health", headers={"traceparent": f"00-{_TRACE_ID}-{_PARENT_SPAN}-01"})
        assert resp.headers["X-Trace-ID"] == _TRACE_ID

    @pytest.mark.asyncio
    async def test_trace_id_generated_when_absent(self, client):
        resp = await client.get("/api/v1/health")
        trace_id = resp.headers["X-Trace-ID"]
        assert len(trace_id) == 32
        int(trace_id, 16)

    def test_filter_outside_request_sets_empty_ids(self) -> None:
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
        assert TraceLoggingFilter().filter(record)
        assert record.trace_id == ""
        assert record.span_id == ""


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class TestRequestLogging:
    @pytest.mark.asyncio
    async def test_access_record_masks_secrets(self, app_factory, client_for, processor, caplog):
        caplog.set_level(logging.INFO, logger="stageflow_api.access")
        client = client_for(app_factory(processor=processor))

        await client.post(
            "/api/v1/billing/webhooks",
            content=b"{}",
            headers={"Stripe-Signature": "t=1,v1=abc", "Authorization": "Bearer secret-token"},
        )

        records = [r for r in caplog.records if r.name == "stageflow_api.access"]
        assert records
        payload = records[-1].request
        assert payload["path"] == "/api/v1/billing/webhooks"
        assert payload["headers"]["stripe-signature"] == "***"
        assert payload["headers"]["authorization"] == "***"
        assert "secret-token" not in caplog.text

    @pytest.mark.asyncio
    async def test_correlation_id_round_trip(self, client):
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "corr-123"})
        assert resp.headers["X-Correlation-ID"] == "corr-123"

    @pytest.mark.asyncio
    async def test_client_error_logged_as_warning(self, client, caplog):
        caplog.set_level(logging.INFO, logger="stageflow_api.access")
        await client.get("/api/v1/webhooks/retries/stats")

        record = [r for r in caplog.records if r.name == "stageflow_api.access"][-1]
        assert record.levelno == logging.WARNING
        assert record.request["status_code"] == 401


class TestJSONFormatter:
    def test_basic_fields(self) -> None:
        record = logging.LogRecord("stageflow_api.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        decoded = json.loads(JSONFormatter().format(record))

        assert decoded["level"] == "INFO"
        assert decoded["logger"] == "stageflow_api.test"
        assert decoded["message"] == "hello world"
        assert "timestamp" in decoded
        assert "trace_id" not in decoded

    def test_optional_fields_included(self) -> None:
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "m", None, None)
        record.trace_id = _TRACE_ID
        record.request = {"path": "/api/v1/health"}

        decoded = json.loads(JSONFormatter().format(record))
        assert decoded["trace_id"] == _TRACE_ID
        assert decoded["request"] == {"path": "/api/v1/health"}

    def test_exception_rendered(self) -> None:
        try:
            raise RuntimeError("kaboom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())

        decoded = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: kaboom" in decoded["exc_info"]


# ---------------------------------------------------------------------------
# Health and metrics
# ---------------------------------------------------------------------------


class TestProbes:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.json()["db"] == "ok"

    @pytest.mark.asyncio
    async def test_ready(self, client):
        resp = await client.get("/ready")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ready"

    @pytest.mark.asyncio
    async def test_probes_with_database_down(self, app_factory, client_for):
        application = app_factory()

        async def _broken():
            session = MagicMock()
            session.execute = AsyncMock(side_effect=ConnectionError("database unreachable"))
            yield session

        application.dependency_overrides[get_db_session] = _broken
        client = client_for(application)

        health = await client.get("/api/v1/health")
        ready = await client.get("/ready")

        assert health.status_code == 200
        assert health.json()["db"] == "degraded"
        assert ready.status_code == 503
        assert ready.json()["checks"] == {"db": "unavailable"}

    @pytest.mark.asyncio
    async def test_metrics_exposition(self, client):
        await client.get("/api/v1/health")
        resp = await client.get("/metrics")

        assert resp.status_code == 200
        assert "stageflow_http_requests_total" in resp.text

    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("/api/v1/webhooks/7a8b9c0d-0000-4000-8000-000000000001/deliveries", "/api/v1/webhooks/{id}/deliveries"),
            ("/api/v1/items/42", "/api/v1/items/{id}"),
            ("/api/v1/health", "/api/v1/health"),
        ],
    )
    def test_normalise_path(self, path: str, expected: str) -> None:
        assert normalise_path(path) == expected
