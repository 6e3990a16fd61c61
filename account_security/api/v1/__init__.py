from fastapi import APIRouter

from account_security.api.v1.routers import health, mfa, security_events, sessions

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(mfa.router)
api_router.include_router(sessions.router)
api_router.include_router(security_events.router)

__all__ = ["api_router"]
