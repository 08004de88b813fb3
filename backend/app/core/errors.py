"""Domain errors raised by the service layer.

Routers may let these propagate; ``register_error_handlers`` turns them into
the same ``{"detail": ...}`` envelope FastAPI uses for ``HTTPException``, with
an extra machine-readable ``code``.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger("ortho_pms.errors")


class DomainError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "DOMAIN_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_response(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ValidationFailed(DomainError):
    code = "VALIDATION_ERROR"


class NotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class InvalidStateError(DomainError):
    status_code = status.HTTP_409_CONFLICT
    code = "INVALID_STATE"


class PermissionDenied(DomainError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class AccountLocked(DomainError):
    status_code = status.HTTP_423_LOCKED
    code = "ACCOUNT_LOCKED"


class AuthenticationFailed(DomainError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "INVALID_CREDENTIALS"


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        logger.info(
            "Domain error on %s: %s (%s)", request.url.path, exc.message, exc.code
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        request_id = request.headers.get("x-request-id")
        logger.exception("Unhandled server error", extra={"request_id": request_id})
        payload = {"detail": "Internal server error"}
        if request_id:
            payload["request_id"] = request_id
        return JSONResponse(status_code=500, content=payload)
