"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware — injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware — catches domain exceptions -> structured JSON errors
    3. CORSMiddleware — handles browser clients

Domain error classes map onto HTTP statuses:

    ValidationError          400
    PermissionDeniedError    403
    NotFoundError            404
    ConflictError            409  (LedgerIntegrityError is logged as an error)
    DeadlineError            410
    ExternalDependencyError  502
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from marketplace_escrow.domain.exceptions import (
    ConflictError,
    DeadlineError,
    EscrowEngineError,
    ExternalDependencyError,
    IllegalTransition,
    LedgerIntegrityError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)


def _error(status_code: int, exc: EscrowEngineError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "message": exc.message},
    )


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        # Use client-provided ID or generate one
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        # Bind to structlog context for all log entries in this request
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except ValidationError as exc:
            logger.info("request.rejected", code=exc.code, error=exc.message)
            return _error(400, exc)
        except PermissionDeniedError as exc:
            logger.warning("request.forbidden", code=exc.code, error=exc.message)
            return _error(403, exc)
        except NotFoundError as exc:
            logger.warning("request.not_found", code=exc.code, error=exc.message)
            return _error(404, exc)
        except LedgerIntegrityError as exc:
            logger.error("ledger.integrity_violation", code=exc.code, error=exc.message)
            return _error(409, exc)
        except IllegalTransition as exc:
            logger.warning(
                "state_machine.invalid_transition",
                current=exc.current_state,
                event=exc.event,
                attempted=exc.attempted_state,
            )
            return _error(409, exc)
        except ConflictError as exc:
            logger.warning("request.conflict", code=exc.code, error=exc.message)
            return _error(409, exc)
        except DeadlineError as exc:
            logger.info("request.deadline_passed", code=exc.code, error=exc.message)
            return _error(410, exc)
        except ExternalDependencyError as exc:
            logger.error("request.dependency_failed", code=exc.code, error=exc.message)
            return _error(502, exc)
        except EscrowEngineError as exc:
            logger.error("domain.error", error=exc.message, code=exc.code)
            return _error(400, exc)
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                },
            )


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware on the FastAPI application.

    Order matters — middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    # CORS (runs first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Tighten in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error handling (runs second)
    app.add_middleware(ErrorHandlerMiddleware)

    # Request ID (runs last = outermost)
    app.add_middleware(RequestIDMiddleware)
