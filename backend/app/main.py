from fastapi import FastAPI

from app.api.v1 import api_router
from app.core.config import get_settings
from app.core.events import lifespan

settings = get_settings()

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)

app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/health")
def health():
    return {"status": "ok", "version": settings.VERSION}
