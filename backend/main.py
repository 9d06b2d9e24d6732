"""
ExamDesk API - main entry point.
Creates the FastAPI app, sets up lifespan (index declaration), error envelopes,
CORS, metrics middleware, registers all routes.
"""

import os
import time
import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, APIRouter, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import logger, get_version_info, is_development
from app.database import close_client, ensure_indexes, get_database
from app.errors import ServiceError, kind_for_status
from app.routes import register_all_routes
from app.services.metrics import log_api_metric
from app.services.push import NotificationHub, SessionRegistry


def _error_body(kind: str, message: str, details=None) -> dict:
    error = {"kind": kind, "message": message}
    if details is not None:
        error["details"] = details
    return {"success": False, "error": error}


async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = jsonable_encoder(exc.errors(), custom_encoder={Exception: str})
    return JSONResponse(status_code=400, content=_error_body("VALIDATION_FAILED", "Invalid request", details))


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(kind_for_status(exc.status_code), str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"❌ Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    message = f"{type(exc).__name__}: {exc}" if is_development() else "Internal server error"
    return JSONResponse(status_code=500, content=_error_body("UNEXPECTED", message))


def create_app(database=None) -> FastAPI:
    """Build the API. ``database`` overrides the Motor database (tests pass an in-memory one)."""
    db = database if database is not None else get_database()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 FastAPI app starting up...")
        await ensure_indexes(app.state.db)
        yield
        logger.info("🛑 FastAPI app shutting down...")
        if database is None:
            close_client()

    app = FastAPI(title="ExamDesk API", lifespan=lifespan)
    app.state.db = db
    app.state.registry = SessionRegistry()
    app.state.hub = NotificationHub(app.state.registry, db)

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    # Create a router with the /api prefix
    api_router = APIRouter(prefix="/api")

    @api_router.get("/version")
    async def get_version():
        """Public version endpoint for deployment verification"""
        return get_version_info()

    register_all_routes(api_router)
    app.include_router(api_router)

    @app.get("/health")
    async def root_health_check():
        """Health check for Kubernetes liveness/readiness probes"""
        return {
            "status": "healthy",
            "service": "ExamDesk API",
            "live_sessions": app.state.registry.total_connections(),
        }

    # ============== METRICS TRACKING MIDDLEWARE ==============

    @app.middleware("http")
    async def metrics_tracking_middleware(request: Request, call_next):
        """Track API metrics for all requests"""
        start_time = time.time()
        error_type = None
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            error_type = type(e).__name__
            logger.error(f"Request failed: {str(e)}")
            raise
        finally:
            response_time_ms = int((time.time() - start_time) * 1000)
            asyncio.create_task(log_api_metric(
                request.app.state.db,
                endpoint=request.url.path,
                method=request.method,
                response_time_ms=response_time_ms,
                status_code=status_code,
                error_type=error_type,
                user_id=getattr(request.state, "user_id", None),
                ip_address=request.client.host if request.client else None
            ))

        return response

    # ============== CORS ==============

    cors_origins_env = os.environ.get("CORS_ORIGINS")
    cors_origins = [origin.strip() for origin in cors_origins_env.split(",")] if cors_origins_env else [
        "http://localhost:3000",
        "http://127.0.0.1:3000"
    ]

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app


app = create_app()
