"""
FastAPI application factory and configuration.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from messaging.api import contact, health, messages, metrics, stats, templates
from messaging.api.metrics import MetricsMiddleware
from messaging.core.config import get_settings
from messaging.core.database import init_db
from messaging.core.errors import MessagingError
from messaging.core.logging import get_logger, log_extra, setup_logging
from messaging.core.metrics import set_startup_time
from messaging.services.templates import get_template_registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger = get_logger(__name__)
    logger.info("Starting application...")

    init_db()
    logger.info("Database initialized")

    # Fail at startup rather than on the first templated send
    registry = get_template_registry()
    logger.info("Templates loaded", **log_extra(templates=len(registry)))

    set_startup_time()

    yield

    logger.info("Shutting down application...")


async def messaging_error_handler(request: Request, exc: MessagingError) -> JSONResponse:
    """Translate service errors into the same body shape as HTTPException."""
    get_logger(__name__).info(
        "Request rejected",
        **log_extra(
            error=type(exc).__name__,
            status_code=exc.status_code,
            detail=exc.detail,
            path=request.url.path,
        ),
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    setup_logging()
    logger = get_logger(__name__)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Messaging service: inbox threads, broadcasts, dynamic audiences and templates",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(MessagingError, messaging_error_handler)

    app.include_router(messages.router)
    app.include_router(templates.router)
    app.include_router(contact.router)
    app.include_router(stats.router)
    app.include_router(health.router)
    app.include_router(metrics.router)

    logger.info(
        "Application created",
        **log_extra(
            app_name=settings.app_name,
            version=settings.app_version,
            debug=settings.debug,
        ),
    )

    return app


# Create the application instance
app = create_app()


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("messaging.main:app", host=settings.host, port=settings.port)
