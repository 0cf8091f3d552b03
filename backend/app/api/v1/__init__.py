from fastapi import APIRouter

from app.api.v1.endpoints import sync

api_router = APIRouter()

api_router.include_router(sync.router)  # Has its own prefix
