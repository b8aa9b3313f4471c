"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter

from ticketqueue.api.routes import admin, auth, queue, sessions

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(auth.router)
api_router.include_router(queue.router)
api_router.include_router(sessions.router)
api_router.include_router(admin.router)
