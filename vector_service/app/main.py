import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from .api import events as events_api
from .api import index as index_api
from .api import search as search_api
from .api import status as status_api
from .database import engine, init_db
from .utils.dependencies import ServiceContainer, build_container
from .utils.error_handlers import AppError, create_error_response, get_error_message, public_error_message
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTPException with user-friendly messages."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
            "status_code": exc.status_code,
        },
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are client errors, reported as 400."""
    logger.warning("Request validation failed on %s: %s", request.url.path, exc.errors())
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return create_error_response(400, get_error_message("validation_error"), details)


async def app_error_handler(request: Request, exc: AppError):
    """Typed service errors that escaped a router."""
    logger.warning("AppError on %s (%s): %s", request.url.path, exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": public_error_message(exc),
            "errorCode": exc.code,
            "retryable": exc.retryable,
        },
    )


async def sqlalchemy_operational_error_handler(request: Request, exc: OperationalError):
    """Handle database operational errors."""
    logger.exception("Database OperationalError: %s", exc)
    return create_error_response(503, get_error_message("database_error"))


async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):
    """Handle general database errors."""
    logger.exception("Database SQLAlchemyError: %s", exc)
    return create_error_response(500, get_error_message("database_error"))


async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors globally."""
    logger.exception("Unhandled exception: %s", exc)
    return create_error_response(500, get_error_message("server_error"))


def create_app(container: ServiceContainer | None = None, *, run_startup: bool = True) -> FastAPI:
    """
    Build the FastAPI app. Tests pass their own container (fake provider,
    temp database) and skip the startup schema work.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_startup:
            setup_logging()
            init_db()
            dialect = str(getattr(engine.dialect, "name", "") or "").lower()
            logger.info("Vector service starting (dialect=%s model=%s)", dialect, app.state.container.provider.model)
            await asyncio.to_thread(app.state.container.cache.purge_expired)
        yield
        await app.state.container.search.drain()
        await app.state.container.provider.aclose()

    app = FastAPI(title="Member Vector Search Service", lifespan=lifespan)
    app.state.container = container or build_container()

    app.include_router(search_api.router)
    app.include_router(index_api.router)
    app.include_router(status_api.router)
    app.include_router(events_api.router)

    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(OperationalError, sqlalchemy_operational_error_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {
            "status": "Vector service running",
            "service": "Member Vector Search Service",
        }

    _default_origins = ["http://localhost:5173", "http://127.0.0.1:5173"]
    _extra_origins = [
        origin.strip()
        for origin in os.getenv("FRONTEND_ORIGINS", "").split(",")
        if origin.strip()
    ]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[*_default_origins, *_extra_origins],
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app


app = create_app()
