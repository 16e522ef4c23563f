import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from agriops.api.v1.service_requests import router as service_requests_router
from agriops.core.config import get_settings
from agriops.core.errors import ServiceRequestError, Violation
from agriops.utils.responses import error_response

settings = get_settings()

logger = logging.getLogger(__name__)

app = FastAPI(
    title="AgriOps Service Requests API",
    version=settings.app_version,
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
        expose_headers=["ETag"],
    )

app.include_router(service_requests_router, prefix="/api/v1", tags=["service-requests"])


@app.exception_handler(ServiceRequestError)
async def _service_request_error_handler(request: Request, exc: ServiceRequestError):
    return JSONResponse(status_code=exc.status_code, content=error_response(exc.message, exc.errors))


def _violation_from_pydantic(error: dict) -> Violation:
    location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path", "header")]
    return Violation(".".join(location) or "request", error.get("msg", "Invalid value"))


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError):
    violations = [_violation_from_pydantic(error) for error in exc.errors()]
    return JSONResponse(status_code=400, content=error_response("Validation failed", violations))


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx in production unless explicitly enabled.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content=error_response("Internal server error"))
    return JSONResponse(status_code=exc.status_code, content=error_response(str(exc.detail)))


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content=error_response(str(exc)))
    return JSONResponse(status_code=500, content=error_response("Internal server error"))


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.security_headers_enabled:
        return response

    headers = response.headers
    if "X-Content-Type-Options" not in headers:
        headers["X-Content-Type-Options"] = "nosniff"
    if "X-Frame-Options" not in headers:
        headers["X-Frame-Options"] = "DENY"
    if "Referrer-Policy" not in headers:
        headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if "Cache-Control" not in headers and request.url.path.startswith("/api/"):
        headers["Cache-Control"] = "no-store"

    return response


@app.get("/health")
async def health_check():
    return {"status": "ok", "version": settings.app_version}
