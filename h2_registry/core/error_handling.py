import datetime
import logging
import traceback
from typing import Any, Dict, Union

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from h2_registry.settings import settings

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for failures raised by ledger operations.

    Every subclass carries a stable ``kind`` tag and the HTTP status code the
    API layer maps it to; the ledger itself never depends on the transport.
    """

    kind: str = "ledger_error"
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(LedgerError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidStateError(LedgerError):
    kind = "invalid_state"
    status_code = status.HTTP_409_CONFLICT


class ConcurrentModificationError(InvalidStateError):
    """The entity changed between the read and the conditional write."""

    kind = "invalid_state"


class ForbiddenError(LedgerError):
    kind = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class InvalidInputError(LedgerError):
    kind = "invalid_input"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidRecipientError(LedgerError):
    kind = "invalid_recipient"
    status_code = status.HTTP_400_BAD_REQUEST


class DuplicateKeyError(LedgerError):
    kind = "duplicate_key"
    status_code = status.HTTP_409_CONFLICT


class ErrorResponse(Exception):
    """Standardised error response format."""

    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        request: Request | None = None,
        details: dict[str, Any] | None = None,
        error_type: str = "error",
        exc: Exception | None = None,
        include_stack: bool = False,
    ) -> None:
        self.timestamp = datetime.datetime.now()
        self.status_code = status_code
        self.message = message
        self.error_type = error_type
        self.details = details or {}

        if request:
            self.details.update(
                {
                    "method": request.method,
                    "path": request.url.path,
                }
            )

        # Stack traces only when explicitly requested and a traceback exists
        if include_stack and exc and exc.__traceback__:
            tb_exc = traceback.TracebackException.from_exception(exc)
            stack_frames = tb_exc.stack

            if stack_frames:
                last = stack_frames[-1]
                self.details["source_location"] = {
                    "file": last.filename,
                    "line": last.lineno,
                    "function": last.name,
                }

            self.details["stack"] = list(tb_exc.format())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "message": self.message,
            "error_type": self.error_type,
            "errors": self.details,
        }


def format_validation_error(
    exc: RequestValidationError,
    request: Request,
) -> ErrorResponse:
    enriched: list[dict[str, Any]] = []

    for err in exc.errors():
        loc_tuple: tuple[Any, ...] = tuple(err["loc"])
        ctx = err.get("ctx", {})
        if ctx and isinstance(ctx, dict):
            ctx = {
                k: (str(v) if isinstance(v, BaseException) else v)
                for k, v in ctx.items()
            }
        enriched.append(
            {
                "location": " -> ".join(str(x) for x in loc_tuple),
                "field": loc_tuple[-1] if len(loc_tuple) > 1 else None,
                "message": err["msg"],
                "type": err["type"],
                "ctx": ctx,
            }
        )

    return ErrorResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Validation failed",
        request=request,
        details={"errors": enriched},
        error_type="validation_error",
    )


async def ledger_exception_handler(request: Request, exc: LedgerError) -> JSONResponse:
    error_response = ErrorResponse(
        status_code=exc.status_code,
        message=exc.message,
        request=request,
        details=dict(exc.details),
        error_type=exc.kind,
    )
    logger.warning(f"Ledger error: {error_response.to_dict()}")
    return JSONResponse(
        status_code=error_response.status_code,
        content=error_response.to_dict(),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    error_response = format_validation_error(exc, request)
    logger.warning("Validation error", extra={"errors": error_response.details})
    return JSONResponse(
        status_code=error_response.status_code,
        content=error_response.to_dict(),
    )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> Union[Response, JSONResponse]:
    """Handle HTTP exceptions."""
    error_response = ErrorResponse(
        status_code=exc.status_code, message=str(exc.detail), error_type="http_error"
    )
    logger.warning(f"HTTP error: {error_response.to_dict()}")
    return JSONResponse(
        status_code=error_response.status_code, content=error_response.to_dict()
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Only expose the stack trace outside PROD
    show_stack = settings.ENVIRONMENT != "PROD"
    error_response = ErrorResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message=str(exc),
        request=request,
        details={"exception_type": type(exc).__name__},
        error_type="server_error",
        exc=exc,
        include_stack=show_stack,
    )
    logger.error("Unhandled exception", exc_info=exc)
    return JSONResponse(
        status_code=error_response.status_code,
        content=error_response.to_dict(),
    )
