"""
Health check endpoints.

- GET /api/health          cheap: process alive, version, uptime
- GET /api/health/deep     database round trip and queue depth per plan (admin)
"""
import asyncio
import logging
from datetime import datetime, timezone

import sqlalchemy as sa
from fastapi import APIRouter, Depends

from app.auth.session_auth import require_admin
from app.core.async_utils import run_sync
from app.core.database import get_engine
from app.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s
from app.models.generation import GenerationJob, JobStatus
from app.services.ledger import AccountSnapshot

logger = logging.getLogger(__name__)

router = APIRouter()

COMPONENT_TIMEOUT = 2.0  # seconds


@router.get("/health")
async def health_check():
    """Cheap health check, no database access."""
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _queue_depth() -> dict:
    jobs = GenerationJob.__table__
    with get_engine().connect() as conn:
        rows = conn.execute(
            sa.select(jobs.c.plan, jobs.c.status, sa.func.count())
            .where(jobs.c.status.in_([JobStatus.QUEUED.value, JobStatus.PROCESSING.value]))
            .group_by(jobs.c.plan, jobs.c.status)
        ).fetchall()
    depth: dict = {}
    for plan, status, count in rows:
        depth.setdefault(plan, {})[status] = int(count)
    return depth


@router.get("/health/deep")
async def deep_health_check(_admin: AccountSnapshot = Depends(require_admin)):
    """Database round trip plus queued/processing counts per plan."""
    started = asyncio.get_running_loop().time()
    try:
        queue = await run_sync(_queue_depth, timeout=COMPONENT_TIMEOUT)
        database = {
            "status": "ok",
            "latency_ms": round((asyncio.get_running_loop().time() - started) * 1000, 1),
        }
    except Exception as e:
        logger.warning("Deep health: database check failed: %s", e)
        queue = None
        database = {"status": "down", "error": str(e)}

    return {
        "status": database["status"],
        "version": APP_VERSION,
        "components": {"database": database},
        "queue": queue,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
