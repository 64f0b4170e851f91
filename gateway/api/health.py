"""Health check endpoints."""

from fastapi import APIRouter, Depends
from typing import List

from gateway.core.container import ServiceContainer
from gateway.models import Alert, HealthStatus
from gateway.utils.clock import utcnow
from gateway.api.dependencies import get_container

router = APIRouter()


@router.get("/health")
async def health_check(container: ServiceContainer = Depends(get_container)):
    """Basic health check."""
    return {
        "status": "healthy",
        "service": container.settings.service_name,
        "environment": container.settings.environment,
        "timestamp": utcnow().isoformat(),
    }


@router.get("/health/detailed")
async def detailed_health_check(container: ServiceContainer = Depends(get_container)):
    """Detailed health check with storage connectivity and bus state."""
    health_status = {
        "status": "healthy",
        "service": container.settings.service_name,
        "environment": container.settings.environment,
        "timestamp": utcnow().isoformat(),
        "checks": {
            "database": {"status": "unknown"},
            "redis": {"status": "unknown"},
            "event_bus": {
                "status": "healthy" if container.bus.running else "stopped",
                "stats": dict(container.bus.stats),
                "dead_letters": len(container.bus.dead_letters),
            },
        }
    }

    # Check MongoDB
    try:
        await container.db.db.command("ping")
        health_status["checks"]["database"]["status"] = "healthy"
    except Exception as e:
        health_status["checks"]["database"]["status"] = "unhealthy"
        health_status["checks"]["database"]["error"] = str(e)
        health_status["status"] = "unhealthy"

    # Check Redis
    try:
        await container.redis_client.ping()
        health_status["checks"]["redis"]["status"] = "healthy"
    except Exception as e:
        health_status["checks"]["redis"]["status"] = "unhealthy"
        health_status["checks"]["redis"]["error"] = str(e)
        health_status["status"] = "unhealthy"

    if not container.bus.running and health_status["status"] == "healthy":
        health_status["status"] = "degraded"
    return health_status


@router.get("/health/integrations", response_model=List[HealthStatus], response_model_by_alias=False)
async def integration_health(container: ServiceContainer = Depends(get_container)):
    """Latest health evaluation of every monitored integration."""
    return await container.health.list_statuses()


@router.get("/health/alerts", response_model=List[Alert])
async def recent_alerts(container: ServiceContainer = Depends(get_container)):
    return list(container.health.recent_alerts)
