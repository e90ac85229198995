from __future__ import annotations

from typing import Any, Callable, Coroutine

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from starlette.exceptions import HTTPException as StarletteHTTPException

from classportal.api.schemas import ErrorBody
from classportal.logging import get_logger, sanitize_error_message
from classportal.service.errors import ServiceError
from classportal.storage.errors import ConstraintViolation, StoreWriteFailed

logger = get_logger(__name__)

FUNCTIONS_PREFIX = "/functions/"


def _is_function_call(request: Request) -> bool:
    return request.url.path.startswith(FUNCTIONS_PREFIX)


def _error_response(status_code: int, message: str) -> JSONResponse:
    """Build the ``{"error": message}`` body every failure is answered with."""
    return JSONResponse(
        status_code=status_code, content=ErrorBody(error=message).model_dump()
    )


def _status_for(request: Request, status_code: int) -> int:
    # provisioning functions answer every failure with 400
    return 400 if _is_function_call(request) else status_code


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid request"
    first = errors[0]
    loc = [str(part) for part in first.get("loc", ()) if part != "body"]
    msg = str(first.get("msg", "invalid request"))
    # pydantic prefixes messages from custom validators
    msg = msg.removeprefix("Value error, ")
    return f"{'.'.join(loc)}: {msg}" if loc else msg


def _log_uncaught(request: Request, exc: Exception) -> None:
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
    )


# raised to the typed handlers, which already run inside the middleware
_HANDLED_ERRORS = (
    RequestValidationError,
    StarletteHTTPException,
    ServiceError,
    StoreWriteFailed,
)


def register_exception_handlers(app: FastAPI) -> None:
    """Install ``{error}`` handlers for domain, storage and validation errors."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        message = _validation_message(exc)
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            message=message,
        )
        return _error_response(400, message)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(_status_for(request, 409), exc.message)

    @app.exception_handler(StoreWriteFailed)
    async def handle_store_write_failed(request: Request, exc: StoreWriteFailed):
        logger.error(
            "store_write_failed",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return _error_response(
            _status_for(request, 500), sanitize_error_message(exc.message)
        )

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(_status_for(request, exc.status_code), exc.message)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        _log_uncaught(request, exc)
        if _is_function_call(request):
            return _error_response(400, sanitize_error_message(str(exc)))
        return _error_response(500, "internal server error")


class FunctionRoute(APIRoute):
    """Route class for ``/functions/*`` that keeps unexpected failures in-stack.

    The ``Exception`` handler runs outside the user middleware and its
    responses carry no CORS or ``X-Request-ID`` headers, so the ``{error}``
    400 is built here instead.
    """

    def get_route_handler(self) -> Callable[[Request], Coroutine[Any, Any, Response]]:
        route_handler = super().get_route_handler()

        async def handler(request: Request) -> Response:
            try:
                return await route_handler(request)
            except _HANDLED_ERRORS:
                raise
            except Exception as exc:
                _log_uncaught(request, exc)
                return _error_response(400, sanitize_error_message(str(exc)))

        return handler
