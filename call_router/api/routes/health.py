"""
Health check and status endpoints
"""

from datetime import datetime, timezone
from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from call_router.core.config import settings
from call_router.core.exceptions import CoordinationError
from call_router.core.logging import get_logger
from call_router.services.call_routing_service import get_call_routing_service
from call_router.services.config_service import get_configuration_service
from call_router.services.coordination_store import get_coordination_store

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.environment
    }


@router.get("/ready")
async def readiness_check():
    """
    Readiness check - the coordination store answers and a configuration is loaded
    """
    snapshot = get_configuration_service().snapshot

    try:
        store_ok = await get_coordination_store().ping()
    except CoordinationError as e:
        logger.warning(f"Readiness check failed: {e.message}")
        store_ok = False

    checks = {
        "coordination_store": store_ok,
        "configuration": bool(snapshot.tenants)
    }
    all_ready = all(checks.values())

    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "status": "ready" if all_ready else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
            "tenants": len(snapshot.tenants)
        }
    )


@router.get("/stats/groups/{tenant_id}/{group_id}")
async def group_statistics(tenant_id: int, group_id: int):
    """
    Distribution state of one agent group: strategy pointers or window counts
    plus the live call count of each member
    """
    group = get_configuration_service().snapshot.group_snapshot(tenant_id, group_id)
    if group is None:
        raise HTTPException(status_code=404, detail="Group not found")

    service = get_call_routing_service()
    stats = await service.strategies.for_group(group).get_stats(group)
    stats["active_calls"] = {
        member.agent_id: await service.load_tracker.active_calls(tenant_id, member.agent_id)
        for member in group.members
    }
    return stats
