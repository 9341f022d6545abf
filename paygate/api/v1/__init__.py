"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import jobs, history, provider

api_router = APIRouter()

api_router.include_router(
    jobs.router,
    prefix="/jobs",
    tags=["jobs"]
)

api_router.include_router(
    history.router,
    prefix="/history",
    tags=["history"]
)

api_router.include_router(
    provider.router,
    prefix="/provider",
    tags=["provider"]
)
