import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)


class PortalError(Exception):
    """Base class for errors that map onto an HTTP status."""
    status_code = 500
    default_message = "Server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(PortalError):
    """Missing or malformed request fields."""
    status_code = 400
    default_message = "Invalid request"


class AuthError(PortalError):
    """Missing or invalid credential."""
    status_code = 401
    default_message = "Unauthorized"


class InvalidCredentialsError(AuthError):
    default_message = "Invalid credentials"


class NotFoundError(PortalError):
    """Missing id, or existence deliberately hidden from the caller."""
    status_code = 404
    default_message = "Not found"


class UpstreamError(PortalError):
    """A remote collaborator (media host, mail provider) failed."""
    status_code = 500
    default_message = "Upstream service failed"


class UploadFailedError(UpstreamError):
    default_message = "Upload failed"


class CorruptStoreError(PortalError):
    """The persisted document could not be parsed."""
    status_code = 500
    default_message = "Data store is corrupt"


class NotJoinedError(PortalError):
    """A chat message arrived from a connection that never joined."""
    default_message = "Connection has not joined the chat"


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return error_response(exc.status_code, exc.message)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return error_response(400, details or "Invalid request")


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return error_response(exc.status_code, message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return error_response(500, "Server error")


def register_exception_handlers(app: FastAPI) -> None:
    """Convert every service error into the JSON error body at the gateway."""
    app.add_exception_handler(PortalError, portal_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
