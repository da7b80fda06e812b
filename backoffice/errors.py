# backoffice/errors.py
from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class BackofficeError(Exception):
    """Base for every error surfaced to API callers as {ok: false, error}."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(BackofficeError):
    status_code = status.HTTP_400_BAD_REQUEST


class AuthError(BackofficeError):
    status_code = status.HTTP_401_UNAUTHORIZED


class PermissionDeniedError(BackofficeError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(BackofficeError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(BackofficeError):
    status_code = status.HTTP_409_CONFLICT


class InvalidTransitionError(BackofficeError):
    status_code = status.HTTP_409_CONFLICT


class InsufficientBalanceError(BackofficeError):
    status_code = status.HTTP_409_CONFLICT


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI handlers
# ─────────────────────────────────────────────────────────────────────────────

async def backoffice_error_handler(request: Request, exc: BackofficeError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = (exc.errors() or [{}])[0]
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    msg = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"ok": False, "error": f"{where}: {msg}" if where else msg},
    )


def install_handlers(app) -> None:
    app.add_exception_handler(BackofficeError, backoffice_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
