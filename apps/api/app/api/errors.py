from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.requests import HTTPConnection

from app.context import get_correlation_id
from app.platform.security.errors import AuthenticationError, AuthorizationError, NotFoundError


logger = logging.getLogger("app.errors")


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: HTTPConnection,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


async def _authentication_error(request: Request, exc: AuthenticationError) -> JSONResponse:
    logger.info("auth.rejected", extra={"path": request.url.path, "error": exc.message})
    return error_response(request, status_code=401, code="unauthorized", message="unauthorized")


async def _authorization_error(request: Request, exc: AuthorizationError) -> JSONResponse:
    logger.info("authz.forbidden", extra={"path": request.url.path, "error": exc.message})
    return error_response(request, status_code=403, code="forbidden", message="forbidden")


async def _not_found_error(request: Request, exc: NotFoundError) -> JSONResponse:
    return error_response(request, status_code=404, code="not_found", message=exc.message)


async def _store_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("store.unavailable", exc_info=exc, extra={"path": request.url.path, "error": str(exc)})
    return error_response(
        request,
        status_code=503,
        code="store_unavailable",
        message="Unable to complete action, try again.",
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AuthenticationError, _authentication_error)  # type: ignore[arg-type]
    app.add_exception_handler(AuthorizationError, _authorization_error)  # type: ignore[arg-type]
    app.add_exception_handler(NotFoundError, _not_found_error)  # type: ignore[arg-type]
    app.add_exception_handler(SQLAlchemyError, _store_error)  # type: ignore[arg-type]
