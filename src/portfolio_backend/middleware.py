import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure
from starlette.middleware.base import BaseHTTPMiddleware

from .gate import ServiceUnavailable
from .models import ErrorResponse
from .utils import utc_timestamp

logger = logging.getLogger(__name__)

GATE_ERROR = "Database connection failed"
STORE_ERROR = "Database connection error"
STORE_UNAVAILABLE_MESSAGE = "Unable to connect to the database. Please try again later."


class RequestLogMiddleware(BaseHTTPMiddleware):
    """
    Logs every request on the way in and its status and latency on the way out.
    Responses with status >= 400 are logged at WARNING.
    """

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        agent = (request.headers.get("user-agent") or "unknown")[:50]
        logger.info("-> %s %s - %s", request.method, request.url.path, agent)

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(level, "<- %s %s - %d (%.0fms)", request.method, request.url.path, response.status_code, duration_ms)
        return response


def error_response(status_code: int, error: ErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error.model_dump(exclude_none=True))


def _expose_details(request: Request) -> bool:
    return bool(getattr(request.app.state, "expose_details", False))


async def service_unavailable_handler(request: Request, exc: ServiceUnavailable) -> JSONResponse:
    gate_error = exc.error
    expose = _expose_details(request)
    return error_response(
        503,
        ErrorResponse(
            error=GATE_ERROR,
            message=gate_error.message if expose else STORE_UNAVAILABLE_MESSAGE,
            timestamp=gate_error.timestamp,
            kind=gate_error.kind.value if expose else None,
        ),
    )


async def store_failure_handler(request: Request, exc: ConnectionFailure) -> JSONResponse:
    logger.error("Store failure in %s %s: %s", request.method, request.url.path, exc)
    return error_response(
        503,
        ErrorResponse(
            error=STORE_ERROR,
            message=STORE_UNAVAILABLE_MESSAGE,
            timestamp=utc_timestamp(),
            details=str(exc) if _expose_details(request) else None,
        ),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error in %s %s", request.method, request.url.path, exc_info=exc)
    return error_response(
        500,
        ErrorResponse(
            error="Internal server error",
            message=str(exc) if _expose_details(request) else "Something went wrong",
            timestamp=utc_timestamp(),
        ),
    )


def install_error_handling(app: FastAPI) -> None:
    app.add_middleware(RequestLogMiddleware)
    app.add_exception_handler(ServiceUnavailable, service_unavailable_handler)
    app.add_exception_handler(ConnectionFailure, store_failure_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
