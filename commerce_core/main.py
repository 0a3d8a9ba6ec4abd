"""
Commerce Core - background processing and plugin runtime

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Import observability modules
from commerce_core.config import settings
from commerce_core.database import AsyncSessionLocal
from commerce_core.logging_config import configure_logging
from commerce_core.sentry_config import configure_sentry
from commerce_core.middleware.logging import LoggingMiddleware
from commerce_core.routes.metrics import router as metrics_router
from commerce_core.routes.plugins import router as plugins_router
from commerce_core.runtime import Runtime

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the queue, workers, scheduler and plugins; stop them in reverse."""
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = Runtime(settings, AsyncSessionLocal)
        app.state.runtime = runtime
    await runtime.start()
    try:
        yield
    finally:
        await runtime.shutdown()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Job queue, webhook delivery, hooks, scheduler and plugins for the store backend",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include plugin admin routes
app.include_router(plugins_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health(request: Request):
    """Queue backend, broker connection and per-queue waiting counts."""
    return await request.app.state.runtime.health()
