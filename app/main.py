"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from app.api import router as api_router
from app.core.background_jobs import get_job_queue
from app.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    queue = get_job_queue()
    await queue.start()
    logger.info("Background job queue started")
    try:
        yield
    finally:
        await queue.stop()
        logger.info(f"Background job queue stopped: {queue.stats}")


app = FastAPI(
    title="Coach Stream Engine",
    description="Real-time coaching chat orchestration: signal fan-out, prompt composition and SSE streaming",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(content={"status": "ok"}, status_code=200)


# Include v1 API router
app.include_router(api_router, prefix="/v1", tags=["v1"])
