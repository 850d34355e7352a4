"""
V1 API router aggregator — wires all endpoint modules together.
"""

from fastapi import APIRouter

from standby.api.v1.endpoints import absences, auth, health, replacements, settings

api_router = APIRouter()

# Auth (login, refresh, user management)
api_router.include_router(auth.router)

# Absence lifecycle
api_router.include_router(absences.router)

# Replacement decisions, candidates, booking release, sweep
api_router.include_router(replacements.router)

# Matching policy (admin)
api_router.include_router(settings.router)

api_router.include_router(health.router)
