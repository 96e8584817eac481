# relay/api/v1/router.py
"""Main API router combining all v1 endpoints"""
from fastapi import APIRouter

from relay.api.v1 import auth, groups, messages, users

api_router = APIRouter()

# Include all routers
api_router.include_router(auth.router, prefix="/auth", tags=["Authentication"])
api_router.include_router(messages.router, prefix="/messages", tags=["Messages"])
api_router.include_router(groups.router, prefix="/groups", tags=["Groups"])
api_router.include_router(users.router, prefix="/users", tags=["Users"])
