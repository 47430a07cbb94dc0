import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from resumable_upload.api.endpoints.upload import router as upload_router
from resumable_upload.core.config import settings
from resumable_upload.services.cleanup import OrphanSweeper
from resumable_upload.services.upload_service import get_upload_service

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = None
    if settings.ORPHAN_SWEEP_ENABLED:
        sweeper = OrphanSweeper(get_upload_service(), settings.ORPHAN_SWEEP_INTERVAL_SECONDS)
        sweeper.start()
    app.state.orphan_sweeper = sweeper
    try:
        yield
    finally:
        if sweeper is not None:
            await sweeper.stop()


app = FastAPI(
    title="Resumable Upload Service",
    version="1.0.0",
    openapi_url=None if settings.ENV == "production" else f"/openapi.json",
    docs_url=None if settings.ENV == "production" else f"/docs",
    redoc_url=None if settings.ENV == "production" else f"/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

app.include_router(upload_router, prefix="/upload", tags=["upload"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("resumable_upload.main:app", host="0.0.0.0", port=settings.SERVICE_PORT)
