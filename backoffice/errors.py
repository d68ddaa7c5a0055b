from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

FORBIDDEN_MESSAGE = "Insufficient permissions."

# Codes for errors raised as plain HTTPException by services and FastAPI itself.
HTTP_ERROR_CODES: dict[int, str] = {
    401: "INVALID_TOKEN",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
}


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message

    def to_response(self, request: Request) -> JSONResponse:
        return error_response(request, status_code=self.status_code, code=self.code, message=self.message)


def forbidden() -> ApiError:
    # Denials never describe which grant was missing.
    return ApiError(status_code=403, code="FORBIDDEN", message=FORBIDDEN_MESSAGE)


def http_error_code(status_code: int) -> str:
    return HTTP_ERROR_CODES.get(status_code, "HTTP_ERROR")


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None) or "unknown"
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "request_id": str(request_id)}},
    )
