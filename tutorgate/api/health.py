"""
Liveness and readiness probes.

/healthz never touches the store. /readyz answers 503 until the store is
reachable and every table the gate writes to exists.
"""

import logging
from typing import List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from tutorgate.core.database import get_engine

logger = logging.getLogger(__name__)

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = (
    "identities",
    "usage_events",
    "activation_codes",
    "pairing_tokens",
    "payment_events",
)


def _not_ready(detail: str) -> JSONResponse:
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


def _missing_tables(engine) -> List[str]:
    inspector = inspect(engine)
    return [name for name in REQUIRED_TABLES if not inspector.has_table(name)]


@root_router.get("/healthz")
def healthz():
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        missing = _missing_tables(engine)
    except Exception as e:
        logger.error("[readyz] database unreachable", extra={"error": str(e)})
        return _not_ready("database unreachable")

    if missing:
        logger.warning("[readyz] tables missing", extra={"missing": missing})
        return _not_ready(f"missing tables: {', '.join(missing)}")
    return {"status": "ok"}
