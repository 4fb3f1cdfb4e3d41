"""
Error taxonomy shared by the request lifecycle services.

Services raise these; HTTP handlers translate them into JSON responses
(`{"ok": false, "error": {"code": ..., "message": ...}}`) and roll back.
"""
from __future__ import annotations


class RequestError(ValueError):
    code = "INVALID"
    http_status = 400

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(RequestError):
    code = "VALIDATION_ERROR"
    http_status = 400


class AuthorizationError(RequestError):
    code = "FORBIDDEN"
    http_status = 403


class NotFoundError(RequestError):
    code = "NOT_FOUND"
    http_status = 404


class ConflictError(RequestError):
    code = "CONFLICT"
    http_status = 409
