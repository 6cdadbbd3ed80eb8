"""
CTF Range Orchestrator - Error Handler Middleware
Turns raised errors into ``{error, detail, request_id}`` JSON bodies
"""

import traceback
from typing import Callable, Tuple

import structlog
from fastapi import Request, Response
from fastapi.responses import ORJSONResponse
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.middleware.base import BaseHTTPMiddleware

from ctfrange.core.exceptions import ContainerRuntimeError, RangeError

logger = structlog.get_logger(__name__)

# Library errors that are not RangeError subclasses
_FALLBACKS = (
    (IntegrityError, "CONFLICT", 409, "Conflicting write rejected by the database"),
    (OperationalError, "DATABASE_UNAVAILABLE", 503, "Database temporarily unavailable"),
)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Maps exceptions escaping a route to a JSON error response.

    Orchestrator errors carry their own code and status; client mistakes are
    logged at info level, everything else with a traceback.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            return self._respond(request, exc)

    def _respond(self, request: Request, exc: Exception) -> Response:
        request_id = getattr(request.state, "request_id", None)
        code, status_code, detail = self.classify(exc)

        log = logger.bind(
            path=request.url.path,
            method=request.method,
            error_code=code,
            request_id=request_id,
        )
        if status_code < 500:
            log.info("Request rejected", error=detail)
        else:
            log.error(
                "Request failed",
                error=str(exc),
                error_type=type(exc).__name__,
                traceback=traceback.format_exc(),
            )

        body = {"error": code, "detail": detail, "request_id": request_id}
        if isinstance(exc, ContainerRuntimeError):
            body["retryable"] = exc.retryable
        return ORJSONResponse(status_code=status_code, content=body)

    @staticmethod
    def classify(exc: Exception) -> Tuple[str, int, str]:
        """(error code, HTTP status, client-facing detail) for an exception."""
        if isinstance(exc, RangeError):
            return exc.error_code, exc.status_code, exc.message

        for exc_type, code, status_code, detail in _FALLBACKS:
            if isinstance(exc, exc_type):
                return code, status_code, detail

        if isinstance(exc, ValueError):
            return "VALIDATION_ERROR", 400, str(exc)

        return "INTERNAL_ERROR", 500, "Unexpected server error"
