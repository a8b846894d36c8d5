from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from brokercrm.context import get_correlation_id
from brokercrm.records.storage.base import BackendError

logger = logging.getLogger("brokercrm.errors")

_HTTP_CODES = {
    status.HTTP_401_UNAUTHORIZED: "unauthorized",
    status.HTTP_403_FORBIDDEN: "forbidden",
    status.HTTP_404_NOT_FOUND: "record_not_found",
    status.HTTP_422_UNPROCESSABLE_ENTITY: "validation_failed",
    status.HTTP_429_TOO_MANY_REQUESTS: "rate_limited",
}


def error_response(
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "code": code,
            "message": message,
            "details": details,
            "correlation_id": get_correlation_id(),
        },
        headers=headers,
    )


async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code = _HTTP_CODES.get(exc.status_code, "http_error")
    return error_response(exc.status_code, code, str(exc.detail), headers=getattr(exc, "headers", None))


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "validation_failed",
        "Request validation failed",
        details=jsonable_encoder([{key: value for key, value in error.items() if key != "ctx"} for error in exc.errors()]),
    )


async def _backend_error_handler(request: Request, exc: BackendError) -> JSONResponse:
    logger.error("storage.failure", extra={"backend": exc.backend, "error": exc.message})
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "backend_error",
        "Storage backend failure",
        details={"backend": exc.backend},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(HTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _request_validation_handler)  # type: ignore[arg-type]
    app.add_exception_handler(BackendError, _backend_error_handler)  # type: ignore[arg-type]
