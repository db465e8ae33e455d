"""Typed errors raised by the orchestration services.

Every error is a fastapi ``HTTPException`` carrying a stable machine-readable
``code`` next to its HTTP ``status_code``, so the HTTP layer can hand it back
unchanged. ``detail`` always has the shape ``{"code": ..., "message": ...}``.

Internal and runtime failures keep the full message on ``.message`` for
server-side logging but expose only a generic message in ``detail``.
"""

from typing import Optional

from fastapi import HTTPException


class ConfigurationError(Exception):
    """Fatal misconfiguration detected at startup."""


class DatabaseServiceError(HTTPException):
    """Base class for all orchestration errors."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    public_message: Optional[str] = None
    retryable: bool = False

    def __init__(self, message: str = "") -> None:
        self.message = message or self.public_message or self.code
        super().__init__(
            status_code=type(self).status_code,
            detail={"code": self.code, "message": self.public_message or self.message},
        )

    def __str__(self) -> str:
        return self.message


class ForbiddenError(DatabaseServiceError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(DatabaseServiceError):
    status_code = 404
    code = "NOT_FOUND"


class ContainerNotFoundError(NotFoundError):
    """The container runtime has no container with the given reference."""

    code = "CONTAINER_NOT_FOUND"


class AlreadyExistsError(DatabaseServiceError):
    status_code = 409
    code = "ALREADY_EXISTS"


class ValidationError(DatabaseServiceError):
    status_code = 422
    code = "VALIDATION_ERROR"


class ConflictError(DatabaseServiceError):
    status_code = 409
    code = "CONFLICT"


class ContainerRuntimeError(DatabaseServiceError):
    status_code = 502
    code = "RUNTIME_ERROR"
    public_message = "Container runtime operation failed"


class ExecTimeoutError(ContainerRuntimeError):
    """An exec inside a container outlived its timeout. Safe to retry."""

    status_code = 504
    code = "EXEC_TIMEOUT"
    public_message = "Command inside the container timed out"
    retryable = True


class InternalError(DatabaseServiceError):
    status_code = 500
    code = "INTERNAL_ERROR"
    public_message = "Internal server error"
