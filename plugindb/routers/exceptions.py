from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from plugindb.core.errors import PersistenceError
from plugindb.core.logging import get_correlation_id


def error_payload(exc: PersistenceError) -> dict[str, Any]:
    if isinstance(exc.detail, dict):
        detail_payload: dict[str, Any] = {**exc.detail}
        detail_payload.setdefault("message", exc.message)
    elif exc.detail is not None:
        detail_payload = {"message": exc.message, "extra": exc.detail}
    else:
        detail_payload = {"message": exc.message}
    payload: dict[str, Any] = {
        "error": exc.error_code,
        "detail": detail_payload,
    }
    correlation_id = get_correlation_id()
    if correlation_id:
        payload["correlation_id"] = correlation_id
    return payload


def register_exception_handlers(app: FastAPI) -> None:
    """Translate persistence errors raised in request handlers to JSON responses."""

    @app.exception_handler(PersistenceError)
    async def _handle_persistence_error(request: Request, exc: PersistenceError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=error_payload(exc))
