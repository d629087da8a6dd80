import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taskhub.cache.layer import CacheLayer
from taskhub.core.config import Settings, get_settings
from taskhub.core.errors import ServiceError
from taskhub.core.logging import setup_logging
from taskhub.database import create_engine, create_session_factory
from taskhub.middleware import request_id_middleware
from taskhub.routers import tags, tasks, users

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    engine = create_engine(settings)
    app.state.session_factory = create_session_factory(engine)
    app.state.cache = await CacheLayer.connect(settings)
    logger.info("%s started", settings.app_name)
    yield
    await app.state.cache.close()
    await engine.dispose()
    logger.info("%s stopped", settings.app_name)


async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        description="Task management API with PostgreSQL, SQLModel and Redis caching",
        swagger_ui_parameters={"displayRequestDuration": True},
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(request_id_middleware)

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Include routers
    app.include_router(users.router)
    app.include_router(tasks.router)
    app.include_router(tags.router)

    @app.get("/")
    async def root():
        return {
            "message": "Welcome to Task Management API",
            "docs": "/docs",
            "version": "1.0.0",
        }

    @app.get("/health")
    async def health_check(request: Request):
        cache: CacheLayer = request.app.state.cache
        return {
            "status": "healthy",
            "cache": "up" if cache.available else "degraded",
            "cache_stats": cache.get_stats(),
        }

    return app


app = create_app()
