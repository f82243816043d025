"""
Health check endpoint.
GET /health - Returns 200 if all checks pass, 503 otherwise.
"""

import time
from typing import Any

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy import text
from sqlalchemy.orm import Session

from apps.api.db import get_db

router = APIRouter()


@router.get("/health")
def health_check(
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """
    Health check endpoint.

    Returns:
        200 + {"status": "ok", ...} if all checks pass
        503 + {"status": "degraded", ...} if any check fails
    """
    result: dict[str, Any] = {
        "status": "ok",
        "api": "ok",
        "db": "ok",
        "polymorphic": "ok",
    }
    all_healthy = True

    # --- Check database (SELECT 1) ---
    try:
        start = time.perf_counter()
        db.execute(text("SELECT 1"))
        result["db_latency_ms"] = round((time.perf_counter() - start) * 1000, 2)
    except Exception:
        result["db"] = "fail"
        all_healthy = False

    # --- Check polymorphic registry was initialized at startup ---
    registry = getattr(request.app.state, "registry", None)
    if registry is None or not registry.is_initialized:
        result["polymorphic"] = "fail"
        all_healthy = False

    # --- Set response ---
    if not all_healthy:
        result["status"] = "degraded"
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return result
