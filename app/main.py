import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from loguru import logger

from app.config.settings import settings
from app.core.logger import setup_logger
from app.db.session import init_db
from app.orchestrator.client import close_client
from app.orchestrator.routes import router as orchestrator_router
from app.pairing.routes import router as linker_router
from app.stages.routes import router as stages_router

setup_logger(level=settings.log_level, log_file=settings.log_file)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Create tables on startup, close the shared HTTP client on shutdown."""
    logger.info("Ensuring database tables exist")
    await asyncio.to_thread(init_db)
    logger.info("Database tables verified")

    yield

    await close_client()
    logger.info("Execution report service stopped")


app = FastAPI(title="Execution Report", lifespan=lifespan)

app.include_router(orchestrator_router)
app.include_router(linker_router)
app.include_router(stages_router)

logger.info("FastAPI application initialized")


@app.get("/health")
def health():
    return {"status": "ok"}


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    logger.debug(f"Request: {request.method} {request.url.path}")
    response = await call_next(request)
    logger.debug(f"Response: {response.status_code} for {request.method} {request.url.path}")
    return response
