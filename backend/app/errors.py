"""Error kinds and the boundary handler that maps them to HTTP responses.

Every stage of a conversion request raises one of the ImageServiceError
subclasses below; register_error_handlers() installs the single place where
those kinds are turned into a status code and an ``{"error": ...}`` body.

    MissingFile       -> 400
    PayloadTooLarge   -> 400
    TransformFailure  -> 500
    CleanupFailure    -> never raised, returned by the cleanup coordinator
"""
import logging
from dataclasses import dataclass
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ImageServiceError(Exception):
    """Base class for failures that end a conversion request."""

    status_code: int = 500
    default_message: str = "Processing failed"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class MissingFile(ImageServiceError):
    status_code = 400
    default_message = "No file uploaded"


class PayloadTooLarge(ImageServiceError):
    status_code = 400

    def __init__(self, limit_bytes: int) -> None:
        self.limit_bytes = limit_bytes
        super().__init__(
            f"File is too large. Maximum upload size is {format_megabytes(limit_bytes)}."
        )


class TransformFailure(ImageServiceError):
    """Codec or I/O error while producing or reading a derived file."""

    status_code = 500

    def __init__(self, detail: str) -> None:
        self.detail = detail or "Unknown error"
        super().__init__(f"Processing failed: {self.detail}")


@dataclass(frozen=True)
class CleanupFailure:
    """A temporary file that could not be deleted. Logged, never surfaced."""

    path: Path
    reason: str

    def __str__(self) -> str:
        return f"could not delete {self.path}: {self.reason}"


def format_megabytes(limit_bytes: int) -> str:
    megabytes = limit_bytes / (1024 * 1024)
    if megabytes == int(megabytes):
        return f"{int(megabytes)}MB"
    return f"{megabytes:.1f}MB"


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def _handle_service_error(request: Request, exc: ImageServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "%s %s failed: %s", request.method, request.url.path, exc.message,
            exc_info=exc.__cause__ or exc,
        )
    else:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return _error_response(exc.status_code, exc.message)


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}"
        for err in exc.errors()
    )
    logger.warning("%s %s invalid request: %s", request.method, request.url.path, problems)
    return _error_response(400, f"Invalid request: {problems}")


async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s %s failed unexpectedly", request.method, request.url.path)
    return _error_response(500, f"Processing failed: {str(exc) or 'Unknown error'}")


def register_error_handlers(app: FastAPI) -> None:
    """Install the boundary handlers on *app*."""
    app.add_exception_handler(ImageServiceError, _handle_service_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.add_exception_handler(Exception, _handle_unexpected_error)
