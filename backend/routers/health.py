"""
Parley Health Router

GET /health (alias /healthz). Storage outages only degrade the report;
the process is unhealthy (503) only when memory is close to exhausted, so
orchestrators do not restart a server that can still serve chats.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict

import psutil
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

router = APIRouter()

PASS = "pass"
FAIL = "fail"


def check_memory(threshold_percent: float) -> Dict[str, Any]:
    """Fail when system memory use is above ``threshold_percent``."""
    usage = psutil.virtual_memory()
    result: Dict[str, Any] = {
        "status": PASS if usage.percent <= threshold_percent else FAIL,
        "usedPercent": usage.percent,
        "rssBytes": psutil.Process().memory_info().rss,
    }
    if result["status"] == FAIL:
        result["error"] = f"memory usage {usage.percent:.1f}% above {threshold_percent:g}%"
    return result


async def _probe(name: str, component) -> Dict[str, Any]:
    if component is None:
        return {"status": FAIL, "error": "not configured"}
    try:
        return await component.health_check()
    except Exception as e:
        logger.warning(f"Health check for {name} raised: {e}")
        return {"status": FAIL, "error": str(e) or e.__class__.__name__}


def overall_status(checks: Dict[str, Dict[str, Any]]) -> str:
    if checks["memory"]["status"] == FAIL:
        return "unhealthy"
    if any(check["status"] == FAIL for check in checks.values()):
        return "degraded"
    return "healthy"


@router.get("/health")
@router.get("/healthz")
async def health(request: Request):
    """Health check - pings the chat store and semantic memory."""
    state = request.app.state
    database, vectordb = await asyncio.gather(
        _probe("database", getattr(state, "store", None)),
        _probe("vectordb", getattr(state, "memory", None)),
    )
    checks = {
        "database": database,
        "vectordb": vectordb,
        "memory": check_memory(state.config.memory_unhealthy_percent),
    }
    status = overall_status(checks)

    coordinator = getattr(state, "shutdown", None)
    body = {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.time() - getattr(state, "started_at", time.time()), 1),
        "shutdown": coordinator.state.value if coordinator is not None else "running",
        "checks": checks,
    }
    return JSONResponse(status_code=503 if status == "unhealthy" else 200, content=body)
