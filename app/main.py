import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, status
from fastapi.responses import JSONResponse
from app.core.db import init_db, close_db
from app.api.v1.commands import router as commands_router
from app.api.v1.wallets import router as wallets_router
from app.core.config import PROJECT_NAME, VERSION
from app.core.exception_handlers import setup_exception_handlers
from app.services.health_monitor import HealthMonitor

log = logging.getLogger("uvicorn")
health_monitor = HealthMonitor()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    log.info(f"Starting {PROJECT_NAME} v{VERSION}...")
    await init_db() # Connect to DB and generate schemas
    yield
    await close_db()
    log.info(f"{PROJECT_NAME} stopped.")

app = FastAPI(
    title=PROJECT_NAME,
    version=VERSION,
    lifespan=lifespan,
    # Configure API documentation and paths
    docs_url="/docs",
    redoc_url="/redoc"
)

# Include routers for modular API structure
app.include_router(commands_router, prefix="/api/v1/commands", tags=["Command Intake"])
app.include_router(wallets_router, prefix="/api/v1/wallets", tags=["Read Models"])


setup_exception_handlers(app)

@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Liveness: the process is up. Does not touch dependencies."""
    return {"status": "ok", "app_name": PROJECT_NAME}


@app.get("/readyz")
async def readiness_check():
    """Readiness: 200 while projection lag and the dead-letter backlog are within limits, 503 otherwise."""
    report = await health_monitor.readiness()
    return JSONResponse(
        status_code=status.HTTP_200_OK if report.ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=report.model_dump(mode="json", by_alias=True),
    )
