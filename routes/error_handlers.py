"""Map upstream / pipeline exceptions to JSON error responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from auth.spapi_auth import SpApiAuthError
from services.orders_pipeline import OrdersNotLoadedError
from services.spapi_client import SpApiError, SpApiPayloadError, SpApiQuotaError

logger = logging.getLogger(__name__)


def error_response(status_code: int, error: str, details: str | None = None) -> JSONResponse:
    body = {"error": error}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


async def _auth_failed(request: Request, exc: SpApiAuthError) -> JSONResponse:
    logger.error("[Auth] %s %s failed authentication: %s", request.method, request.url.path, exc)
    return error_response(401, "auth_failed", str(exc))


async def _quota_exceeded(request: Request, exc: SpApiQuotaError) -> JSONResponse:
    return error_response(429, "quota_exceeded", str(exc))


async def _upstream_failed(request: Request, exc: SpApiError) -> JSONResponse:
    return error_response(502, "upstream_error", str(exc))


async def _bad_upstream_payload(request: Request, exc: Exception) -> JSONResponse:
    logger.error("[Orders] Malformed upstream payload on %s: %s", request.url.path, exc)
    return error_response(502, "malformed_upstream_payload", str(exc))


async def _not_loaded(request: Request, exc: OrdersNotLoadedError) -> JSONResponse:
    return error_response(404, "注文データが見つかりません。先に注文データを取得してください。", str(exc))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SpApiAuthError, _auth_failed)
    app.add_exception_handler(SpApiQuotaError, _quota_exceeded)
    app.add_exception_handler(SpApiError, _upstream_failed)
    app.add_exception_handler(SpApiPayloadError, _bad_upstream_payload)
    app.add_exception_handler(ValidationError, _bad_upstream_payload)
    app.add_exception_handler(OrdersNotLoadedError, _not_loaded)
