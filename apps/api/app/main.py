import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.db import engine
from app.core.errors import (
    AlreadyResolvedError,
    NotFoundError,
    PrerequisiteError,
    ScreeningError,
    ValidationError,
)
from app.routers import conflicts, health, screening

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    yield
    # Shutdown: dispose connection pool cleanly
    await engine.dispose()


app = FastAPI(
    title="Screening Engine API",
    description="Multi-reviewer study screening for systematic reviews",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (AlreadyResolvedError, 409),
    (PrerequisiteError, 412),
    (ValidationError, 422),
)


@app.exception_handler(ScreeningError)
async def screening_error_handler(request: Request, exc: ScreeningError) -> JSONResponse:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            body = {"detail": str(exc)}
            if isinstance(exc, PrerequisiteError):
                body["blocking_count"] = exc.blocking_count
            return JSONResponse(status_code=status_code, content=body)
    # ConflictingWriteError that escaped the service layer
    logger.warning("Unmapped screening error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": str(exc)})


app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(screening.router, prefix="/api/v1/projects", tags=["screening"])
app.include_router(conflicts.router, prefix="/api/v1/projects", tags=["conflicts"])


@app.get("/")
async def root():
    return {"message": "Screening Engine API", "version": "0.1.0"}
