from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


def error_body(message: str, **extra: Any) -> dict[str, Any]:
    error: dict[str, Any] = {"message": message}
    error.update(extra)
    return {"error": error}


class ProxyError(HTTPException):
    """HTTP error whose ``detail`` is the exact JSON body sent to the client."""

    def __init__(self, status_code: int, payload: Any):
        super().__init__(status_code=status_code, detail=payload)


class MethodNotAllowed(ProxyError):
    def __init__(self) -> None:
        super().__init__(405, error_body("Method Not Allowed"))


class ConfigError(ProxyError):
    def __init__(self, message: str):
        super().__init__(500, error_body(message))


class MissingField(ProxyError):
    def __init__(self, message: str):
        super().__init__(400, error_body(message))


class InvalidField(ProxyError):
    def __init__(self, message: str):
        super().__init__(400, error_body(message))


class MalformedMessage(ProxyError):
    def __init__(self, index: int, reason: str = "has no text part"):
        super().__init__(400, error_body(f"Message {index} in conversationHistory {reason}."))


class UpstreamError(ProxyError):
    """Non-2xx upstream reply, passed through with the upstream status."""

    @classmethod
    def from_body(cls, status_code: int, text: str) -> "UpstreamError":
        try:
            payload = json.loads(text)
        except ValueError:
            payload = error_body(f"Upstream API returned a non-JSON error: {text}")
        return cls(status_code, payload)


class ProxyInternalError(ProxyError):
    def __init__(self, reason: str):
        payload = error_body(f"Proxy server internal error: {reason}")
        payload["developerMessage"] = "Check the function logs and the upstream API status."
        super().__init__(500, payload)


class UpstreamUnreachable(ProxyInternalError):
    pass


class StorageTokenError(ProxyError):
    def __init__(self, details: str):
        super().__init__(
            500, error_body("Failed to obtain temporary credentials", details=details)
        )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    if isinstance(exc, ProxyError):
        return JSONResponse(
            status_code=exc.status_code, content=exc.detail, headers=exc.headers
        )

    if exc.status_code == 405:
        normalized: ProxyError = MethodNotAllowed()
        return JSONResponse(
            status_code=405, content=normalized.detail, headers=exc.headers
        )

    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail)),
        headers=exc.headers,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        reason = f"{location}: {first.get('msg', 'invalid value')}"
    else:
        reason = "invalid value"
    logger.info("Rejected request body on %s (%s)", request.url.path, reason)
    return JSONResponse(
        status_code=400, content=error_body(f"Malformed request body: {reason}")
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
