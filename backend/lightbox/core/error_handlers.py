import logging
import time
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from lightbox.core.errors import LightboxError

REQUEST_ID_HEADER = "X-Request-Id"
logger = logging.getLogger("lightbox.http")


def _error_response(status_code: int, message, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message}, headers=headers)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assigns a request id, times the request and turns stray exceptions into 500s."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "Unhandled exception",
                extra={"path": request.url.path, "method": request.method, "request_id": request_id},
            )
            response = _error_response(500, "Internal server error")

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "Request completed",
            extra={
                "path": request.url.path,
                "method": request.method,
                "duration_ms": round(duration_ms, 2),
                "status_code": response.status_code,
                "request_id": request_id,
            },
        )
        return response


def register_error_handlers(app: FastAPI) -> None:
    app.add_middleware(RequestContextMiddleware)

    @app.exception_handler(LightboxError)
    async def lightbox_error_handler(request: Request, exc: LightboxError):
        if exc.status_code >= 500:
            logger.error(
                "Server error",
                exc_info=exc,
                extra={"path": request.url.path, "request_id": getattr(request.state, "request_id", None)},
            )
            return _error_response(exc.status_code, "Internal server error")
        return _error_response(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        logger.info(
            "Validation error",
            extra={"path": request.url.path, "method": request.method, "errors": exc.errors()},
        )
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query"))
        message = first.get("msg", "Invalid request")
        return _error_response(400, f"{location}: {message}" if location else message)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(
                "HTTP server error",
                extra={"path": request.url.path, "detail": exc.detail, "request_id": getattr(request.state, "request_id", None)},
            )
        return _error_response(exc.status_code, exc.detail, headers=getattr(exc, "headers", None))
