"""Error taxonomy shared by the services and the HTTP layer."""

from typing import Iterable, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from loguru import logger


class RifaError(Exception):
    """Base error with a client-facing message and an HTTP status code."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ValidationError(RifaError):
    def __init__(self, message: str):
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class ConflictError(RifaError):
    """Entity is not in a state that allows the requested transition."""

    def __init__(self, message: str, actual_status: Optional[str] = None,
                 status_code: int = status.HTTP_400_BAD_REQUEST):
        self.actual_status = actual_status
        super().__init__(message, status_code)


class TicketsUnavailableError(ConflictError):
    def __init__(self, ticket_numbers: Iterable[int]):
        self.ticket_numbers = sorted(ticket_numbers)
        nums = ", ".join(str(n) for n in self.ticket_numbers)
        super().__init__(
            f"Tickets no longer available: {nums}",
            status_code=status.HTTP_409_CONFLICT,
        )


class AuthError(RifaError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(RifaError):
    def __init__(self, message: str = "Invalid request"):
        super().__init__(message, status.HTTP_403_FORBIDDEN)


class NotFoundError(RifaError):
    def __init__(self, message: str):
        super().__init__(message, status.HTTP_404_NOT_FOUND)


class StoreError(RifaError):
    """The data store failed. The message is safe to show to clients."""

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message, status.HTTP_500_INTERNAL_SERVER_ERROR)


# ----------------------------
# FastAPI handlers
# ----------------------------
async def rifa_error_handler(request: Request, exc: RifaError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.opt(exception=exc.__cause__ or exc).error(
            f"{request.method} {request.url.path}: {exc.message}"
        )
    else:
        logger.warning(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code,
                        content={"error": exc.message})


async def unhandled_error_handler(request: Request,
                                  exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RifaError, rifa_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
