import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from apps.api.config import settings
from apps.api.exceptions import PagewrightException, pagewright_exception_handler
from apps.api.routes import health, preview, projects, status
from apps.api.middleware import RequestIDMiddleware
from apps.api.database import engine
from apps.api.services.object_storage import object_storage
from apps.api.services.sandbox import sandbox_provider
from apps.api.services.status_channel import StatusChannel, StatusSweeper, create_status_store

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manages application startup and shutdown lifecycle."""

    # --- Startup ---
    logger.info("Pagewright API v%s starting up...", settings.app_version)

    # Status channel: one store per process, swept by a background task
    status_store = create_status_store(
        settings.status_backend,
        redis_url=settings.redis_url,
        max_entries=settings.status_max_entries,
        idle_seconds=settings.status_idle_seconds,
    )
    app.state.status_channel = StatusChannel(status_store)
    sweeper = StatusSweeper(
        status_store,
        idle_seconds=settings.status_idle_seconds,
        interval_seconds=settings.status_sweep_interval_seconds,
    )
    sweeper.start()
    logger.info("Status channel initialized (%s)", settings.status_backend)

    # Sandboxes and artifact storage
    app.state.sandbox_provider = sandbox_provider
    app.state.object_storage = object_storage
    logger.info(
        "Sandbox image %s, artifacts in bucket %s", settings.sandbox_image, settings.storage_bucket
    )

    yield  # App runs and handles requests here

    # --- Shutdown ---
    logger.info("Pagewright API shutting down...")

    await sweeper.stop()
    await status_store.close()

    # Close database connections
    await engine.dispose()

def create_app() -> FastAPI:
    """Application factory pattern.

    Tests build their own minimal app instead; see tests/conftest.py.
    """

    application = FastAPI(
        title=settings.app_name,
        description="Builds generated web apps in disposable sandboxes and serves versioned live previews.",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs",   # Swagger UI endpoint
        redoc_url="/redoc", # Swagger UI alternative
    )

    # --- Middleware ---
    # Order matters: middleware is applied in REVERSE order (last added runs first)
    # So CORS runs first (outermost), then RequestID (innermost, closest to your code)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(RequestIDMiddleware) # Add request ID middleware to every request
    # --- Exception Handlers ---
    application.add_exception_handler(PagewrightException, pagewright_exception_handler)

    # --- Routes ---
    application.include_router(health.router, tags=["health"])
    application.include_router(projects.router)     # /projects, /projects/{id}/save, builds, restore
    application.include_router(preview.router)      # /preview/{user_id}/{project_id}
    application.include_router(status.router)       # /generate/status

    return application

# Create the app instance — this is what uvicorn runs
app = create_app()
