from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class LedgerError(Exception):
    """Base class for errors raised by the reconciliation pipeline."""


class MalformedTimestampError(LedgerError, ValueError):
    def __init__(self, value: Any, reason: str | None = None):
        message = f"Malformed timestamp: {value!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.value = value


class FetchError(LedgerError):
    pass


class AuthError(FetchError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientError(FetchError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamStatusError(FetchError):
    def __init__(self, message: str, status_code: int, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UpstreamPayloadError(FetchError):
    pass


class FetchExhaustedError(FetchError):
    def __init__(self, message: str, last_error: BaseException | None = None, attempts: int = 0):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


class CacheCorruptionError(LedgerError):
    def __init__(self, year: int, reason: str):
        super().__init__(f"Cached dataset for {year} is invalid: {reason}")
        self.year = year
        self.reason = reason


class ReconciliationError(LedgerError):
    def __init__(self, year: int, cause: BaseException):
        super().__init__(f"Unable to build dataset for {year}: {cause}")
        self.year = year
        self.cause = cause


class PriceUnavailableError(LedgerError):
    pass


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.detail = detail


def _error_body(code: str, message: str, request_id: str | None, detail: Any = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
        }
    }
    if detail is not None:
        payload["error"]["detail"] = detail
    if request_id:
        payload["error"]["request_id"] = request_id
    return payload


def _status_code_to_error_code(status_code: int) -> str:
    mapping = {
        400: "BAD_REQUEST",
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
        429: "RATE_LIMITED",
        500: "INTERNAL_ERROR",
        502: "UPSTREAM_ERROR",
        503: "SERVICE_UNAVAILABLE",
    }
    return mapping.get(status_code, f"HTTP_{status_code}")


def _json_error(status_code: int, code: str, message: str, request_id: str | None, detail: Any = None):
    return JSONResponse(
        status_code=status_code,
        content=_error_body(code, message, request_id, detail=detail),
        headers={"X-Request-ID": request_id} if request_id else None,
    )


def register_error_handling(app: FastAPI, logger):
    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid4().hex[:12]
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        request_id = getattr(request.state, "request_id", None)
        return _json_error(exc.status_code, exc.code, exc.message, request_id, detail=exc.detail)

    @app.exception_handler(ReconciliationError)
    async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
        request_id = getattr(request.state, "request_id", None)
        logger.warning("Dataset for %s unavailable [request_id=%s]: %s", exc.year, request_id, exc.cause)
        detail = {"year": exc.year, "cause": type(exc.cause).__name__}
        if isinstance(exc.cause, AuthError):
            detail["auth"] = True
        return _json_error(502, "RECONCILIATION_FAILED", str(exc), request_id, detail=detail)

    @app.exception_handler(PriceUnavailableError)
    async def price_unavailable_handler(request: Request, exc: PriceUnavailableError):
        request_id = getattr(request.state, "request_id", None)
        return _json_error(503, "PRICE_UNAVAILABLE", str(exc), request_id)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        request_id = getattr(request.state, "request_id", None)
        return _json_error(
            422,
            "VALIDATION_ERROR",
            "Request validation failed.",
            request_id,
            detail=exc.errors(),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        request_id = getattr(request.state, "request_id", None)

        code = _status_code_to_error_code(exc.status_code)
        detail = None
        message = "Request failed."
        if isinstance(exc.detail, dict):
            code = str(exc.detail.get("code") or code)
            message = str(exc.detail.get("message") or exc.detail.get("detail") or message)
            detail = exc.detail.get("detail")
        elif exc.detail:
            message = str(exc.detail)

        return _json_error(exc.status_code, code, message, request_id, detail=detail)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        logger.exception("Unhandled API exception [request_id=%s]", request_id)
        return _json_error(500, "INTERNAL_ERROR", "Unexpected internal error.", request_id)
