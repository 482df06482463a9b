from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from plugindb.core.errors import StorageError
from plugindb.core.logging import get_logger
from plugindb.core.metrics import get_counters, get_histograms, get_last_runs, get_metrics
from plugindb.db.connection import SessionFactory
from plugindb.db.transaction import TransactionRunner

logger = get_logger("plugindb.routers.telemetry", component="telemetry")


def build_telemetry_router(factory: SessionFactory) -> APIRouter:
    """Health and metrics endpoints over ``factory`` for hosts that serve HTTP."""

    router = APIRouter(prefix="/telemetry", tags=["telemetry"])
    runner = TransactionRunner.owned(factory)

    @router.get("/health")
    def health() -> JSONResponse:
        def _ping(session: Session) -> Any:
            return session.execute(text("SELECT 1")).scalar()

        payload: dict[str, Any] = {
            "entities": [entity.__name__ for entity in factory.entities],
            "closed": factory.closed,
        }
        if factory.closed:
            payload.update({"status": "unhealthy", "database": "closed"})
            return JSONResponse(status_code=503, content=payload)
        try:
            runner.run_read(_ping)
        except StorageError as exc:
            logger.error("health_check_db_failed", extra={"structured_data": {"error": exc.message}})
            payload.update({"status": "unhealthy", "database": "disconnected"})
            return JSONResponse(status_code=503, content=payload)
        payload.update(
            {
                "status": "healthy",
                "database": "connected",
                "pool": factory.pool_status(),
            }
        )
        return JSONResponse(status_code=200, content=payload)

    @router.get("/metrics")
    def metrics() -> dict[str, Any]:
        return {
            "counters": get_counters(),
            "timings": get_metrics(),
            "histograms": get_histograms(),
            "last_runs": get_last_runs(),
        }

    return router


__all__ = ["build_telemetry_router"]
