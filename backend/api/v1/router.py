"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
This makes it trivial to add /api/v2 later without touching existing routes.
"""

from fastapi import APIRouter

from api.routes import analytics, events, flows, health, runs, scheduler

api_v1_router = APIRouter()

# Health
api_v1_router.include_router(
    health.router,
    tags=["Health"],
)

# Flows: validation, run start and listing, simulation
api_v1_router.include_router(
    flows.router,
    prefix="/flows",
    tags=["Flows"],
)

# Runs
api_v1_router.include_router(
    runs.router,
    prefix="/runs",
    tags=["Runs"],
)

# Engagement event tracking
api_v1_router.include_router(
    events.router,
    prefix="/events",
    tags=["Events"],
)

# Scheduler
api_v1_router.include_router(
    scheduler.router,
    prefix="/scheduler",
    tags=["Scheduler"],
)

# Analytics
api_v1_router.include_router(
    analytics.router,
    prefix="/analytics",
    tags=["Analytics"],
)
