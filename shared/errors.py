import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class LifecycleError(Exception):
    """Base class for rejected lifecycle operations."""

    code = "lifecycle_error"
    status_code = 400

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class EntryNotFound(LifecycleError):
    code = "entry_not_found"
    status_code = 404


class VerificationNotFound(LifecycleError):
    code = "verification_not_found"
    status_code = 404


class InvalidRequest(LifecycleError):
    """The caller asked for something the current state can never allow."""

    code = "invalid_request"
    status_code = 400


class NotEntryOwner(InvalidRequest):
    code = "not_entry_owner"
    status_code = 403


class AlreadyReported(LifecycleError):
    code = "already_reported"
    status_code = 409


class WindowClosed(LifecycleError):
    code = "window_closed"
    status_code = 409


class InvalidTransition(InvalidRequest):
    """The target state can never be reached from the current one."""

    code = "invalid_transition"
    status_code = 409


class TransitionConflict(InvalidTransition):
    """Another actor changed the record between our read and our write."""

    code = "transition_conflict"


def install_error_handlers(app: FastAPI):
    """Render LifecycleError subclasses as JSON bodies with their status codes."""

    @app.exception_handler(LifecycleError)
    async def lifecycle_error_handler(request: Request, exc: LifecycleError):
        logger.warning(
            f"Rejected {request.method} {request.url.path}: {exc.message}",
            extra={"error_code": exc.code, **exc.context}
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "detail": exc.message, **exc.context},
        )
