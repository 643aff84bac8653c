"""
FastAPI Application — Entry Point

Document Lifecycle & Retrieval-Indexing Service

  - All routes are versioned under /api/v1/
  - JWT (Cognito or Auth0) verified per route; the tenant comes from the token
  - Domain errors (DocumentServiceError) and HTTP errors render as ErrorResponse
  - /health and /ready are unauthenticated (load balancer probes)

Middleware stack (innermost → outermost):
  1. CORS
  2. Request ID + request log line
  3. Trusted host (production only)
  4. Gzip for responses > 1 KB
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.documents import global_router as global_documents_router
from app.api.v1.documents import router as documents_router
from app.api.v1.indexing import router as indexing_router
from app.api.v1.query import router as query_router
from app.core.config import settings
from app.core.exceptions import DocumentServiceError
from app.db.session import check_db_health
from app.schemas.documents import HTTP_ERROR_MAP, ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting document service | env=%s pageindex=%s",
        settings.app_env, "on" if settings.pageindex_enabled else "off",
    )

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")

    logger.info("Database: connected")
    logger.info(
        "Buckets: org=%s global=%s",
        settings.s3_org_documents_bucket, settings.s3_global_documents_bucket,
    )

    yield

    logger.info("Shutting down document service")
    from app.db.session import engine
    await engine.dispose()


def _request_id(request: Request) -> str:
    return request.headers.get("X-Request-ID") or str(uuid.uuid4())


def create_app() -> FastAPI:
    app = FastAPI(
        title="Document Lifecycle Service",
        description=(
            "Versioned document storage with extraction tracking, chunk embedding "
            "and reasoning-tree indexing for organization and global documents."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    if settings.is_production:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = _request_id(request)
        start = time.perf_counter()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers
    # ----------------------------------------------------------------

    @app.exception_handler(DocumentServiceError)
    async def service_error_handler(request: Request, exc: DocumentServiceError):
        if exc.status_code >= 500:
            logger.error("Service error | path=%s code=%s error=%s", request.url.path, exc.error_code, exc.message)
        body = ErrorResponse(
            error_code=exc.error_code,
            message=exc.message,
            details=[ErrorDetail(field=exc.field, message=exc.message, code=exc.error_code)] if exc.field else [],
            request_id=_request_id(request),
        )
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        body = ErrorResponse(
            error_code=HTTP_ERROR_MAP.get(exc.status_code, "HTTP_ERROR"),
            message=str(exc.detail),
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(mode="json"),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        request_id = _request_id(request)
        logger.exception("Unhandled exception | path=%s request_id=%s", request.url.path, request_id)
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers (indexing before documents: /reindex, /pageindex/...)
    # ----------------------------------------------------------------

    app.include_router(indexing_router,         prefix="/api/v1")
    app.include_router(documents_router,        prefix="/api/v1")
    app.include_router(global_documents_router, prefix="/api/v1")
    app.include_router(query_router,            prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness (no auth)
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "document-lifecycle-service"}

    @app.get("/health/ready", tags=["Operations"], summary="Readiness probe (k8s alias)")
    @app.get("/ready", tags=["Operations"], summary="Readiness probe")
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ready", "database": db_status})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
