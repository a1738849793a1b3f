"""Health endpoint with a database reachability check."""

from __future__ import annotations

from fastapi import APIRouter

from chatvault.infra.time import utc_now
from chatvault.observability.logging import get_logger

router = APIRouter(tags=["health"])

logger = get_logger(__name__)


def _database_reachable() -> bool:
    from chatvault.infra.db import txn

    try:
        with txn() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()
    except Exception:
        logger.warning("database health check failed", exc_info=True)
        return False
    return True


@router.get("/health")
def health() -> dict:
    """Health check endpoint; always 200, reports database status."""
    return {
        "status": "ok",
        "timestamp": utc_now().isoformat(),
        "database": "connected" if _database_reachable() else "disconnected",
    }
