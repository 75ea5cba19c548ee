"""
Shared error handling for the HTTP surface. Domain errors become distinct status codes and machine-readable codes; anything unexpected is logged with its traceback and answered with a generic 500 so internal details never reach the caller.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import asyncio
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from services.common.errors import (
    InsufficientScope,
    KeyServiceUnavailable,
    SecretKeeperError,
    TokenInvalid,
)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])
logger = logging.getLogger(__name__)


def handle_route_errors(
    *,
    bad_request_exceptions: tuple[type[Exception], ...] = (ValueError,),
    bad_request_detail: str | None = None,
    internal_detail: str | None = "Internal server error",
) -> Callable[[F], F]:

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await func(*args, **kwargs)
            except (HTTPException, SecretKeeperError):
                raise
            except asyncio.TimeoutError as exc:
                raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail="Request timed out") from exc
            except bad_request_exceptions as exc:
                detail = bad_request_detail or str(exc) or "Invalid request"
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail) from exc
            except Exception as exc:
                logger.exception("Unhandled exception in route %s: %s", func.__name__, type(exc).__name__)
                if internal_detail:
                    raise HTTPException(
                        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                        detail=internal_detail,
                    ) from exc
                raise

        return wrapper

    return decorator


def secret_error_handler(
    request: Request,
    exc: SecretKeeperError,
) -> JSONResponse:
    headers = None
    if isinstance(exc, TokenInvalid):
        headers = {"WWW-Authenticate": 'Bearer error="invalid_token"'}
    elif isinstance(exc, InsufficientScope):
        headers = {"WWW-Authenticate": 'Bearer error="insufficient_scope"'}
    elif isinstance(exc, KeyServiceUnavailable):
        headers = {"Retry-After": "1"}

    if exc.status_code >= 500:
        logger.warning("request_failed path=%s code=%s", request.url.path, exc.code)
    else:
        logger.info("request_denied path=%s code=%s", request.url.path, exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
        headers=headers,
    )


def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    # Drop echoed inputs; the body may contain the secret being stored.
    errors = [{"loc": err.get("loc"), "msg": err.get("msg"), "type": err.get("type")} for err in exc.errors()]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": errors},
    )


def general_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    logger.exception("Unhandled exception: %s", type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )
