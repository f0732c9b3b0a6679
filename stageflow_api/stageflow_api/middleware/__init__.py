"""Middleware components for the StageFlow API."""

from __future__ import annotations

from stageflow_api.middleware.auth import AuthenticationMiddleware
from stageflow_api.middleware.logging import RequestLoggingMiddleware
from stageflow_api.middleware.prometheus import PrometheusMiddleware
from stageflow_api.middleware.rbac import (
    ROLE_PERMISSIONS,
    Permission,
    Role,
    get_user_role,
    require_permission,
)
from stageflow_api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter

__all__ = [
    "AuthenticationMiddleware",
    "Permission",
    "PrometheusMiddleware",
    "ROLE_PERMISSIONS",
    "RequestLoggingMiddleware",
    "Role",
    "TraceContextMiddleware",
    "TraceLoggingFilter",
    "get_user_role",
    "require_permission",
]
