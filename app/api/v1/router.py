"""
Aggregate all v1 endpoint routers under the /v1 prefix.
"""

from fastapi import APIRouter

from app.api.v1.endpoints.jobs import router as jobs_router
from app.api.v1.endpoints.prompts import router as prompts_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(jobs_router)
v1_router.include_router(prompts_router)
