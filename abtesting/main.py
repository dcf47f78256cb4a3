"""Main FastAPI application.

This is where the app gets created, routers get plugged in, and the
experiment store is opened/closed with the app.
"""
import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from abtesting.config import settings
from abtesting.errors import InvalidStateError, NotFoundError, ValidationError
from abtesting.routers import experiments, assignments, events, results
from abtesting.storage import snapshot_store_from_settings
from abtesting.store import ExperimentStore

logger = logging.getLogger(__name__)

app = FastAPI(
    title="A/B Testing API",
    description="Deterministic assignment, event tracking and statistical evaluation of experiments",
    version="1.0.0"
)

# CORS middleware - useful for development
# TODO: lock down origins for production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify actual origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers (aka endpoints)
app.include_router(experiments.router)
app.include_router(assignments.router)
app.include_router(events.router)
app.include_router(results.router)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.on_event("startup")
async def startup_event():
    """Configure logging and load the experiment store."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.state.store = ExperimentStore.open(snapshot_store_from_settings(settings))
    logger.info(f"Experiment store opened ({settings.snapshot_backend} backend)")


@app.on_event("shutdown")
async def shutdown_event():
    """Flush assignments/events that haven't been saved yet."""
    store = getattr(app.state, "store", None)
    if store is not None:
        store.close()
        logger.info("Experiment store closed")


@app.get("/")
def root():
    """Just a basic root endpoint."""
    return {"status": "ok", "message": "A/B Testing API is running"}


@app.get("/health")
def health():
    """Health check endpoint"""
    return {"status": "healthy"}
