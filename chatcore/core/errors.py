"""Error taxonomy shared by the engines and the HTTP layer."""

from __future__ import annotations

from fastapi import Request, status
from fastapi.responses import JSONResponse


class ChatError(Exception):
    """Base class; ``status_code`` is what the REST layer answers with."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    @property
    def code(self) -> str:
        return self.__class__.__name__


class Unauthenticated(ChatError):
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(ChatError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(ChatError):
    status_code = status.HTTP_404_NOT_FOUND


class InvalidArgument(ChatError):
    status_code = status.HTTP_400_BAD_REQUEST


class Conflict(ChatError):
    """Unique-constraint collision; callers resolve it by re-reading."""

    status_code = status.HTTP_409_CONFLICT


class Transient(ChatError):
    """Store or broker unavailable."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )
