"""
API Router
==========
Dashboard API router combining all endpoint modules.
"""

from fastapi import APIRouter

from tollgate.api.endpoints import alerts, calls, config, dashboard, events, health, stats, status

api_router = APIRouter()

# Include endpoint routers
api_router.include_router(dashboard.router, tags=["Dashboard"])
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(status.router, prefix="/api", tags=["Status"])
api_router.include_router(stats.router, prefix="/api", tags=["Stats"])
api_router.include_router(calls.router, prefix="/api", tags=["Calls"])
api_router.include_router(alerts.router, prefix="/api", tags=["Alerts"])
api_router.include_router(config.router, prefix="/api", tags=["Config"])
api_router.include_router(events.router, prefix="/api", tags=["Events"])
