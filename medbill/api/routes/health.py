"""
Health Check Routes
Source: https://microservices.io/patterns/observability/health-check-api.html
"""

from typing import Any

from fastapi import APIRouter

from medbill.db.connection import check_db_connection

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Basic health check for load balancers."""
    return {
        "status": "healthy",
        "service": "medbill-api",
    }


@router.get("/health/detailed")
async def detailed_health_check() -> dict[str, Any]:
    """Health check including the billing database."""
    db_healthy = await check_db_connection()

    return {
        "status": "healthy" if db_healthy else "unhealthy",
        "service": "medbill-api",
        "checks": {
            "database": "healthy" if db_healthy else "unhealthy",
        },
    }
