"""Map domain exceptions to HTTP responses with the standard envelope."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tutor_chat.api.schemas import envelope
from tutor_chat.errors import (
    AccessDeniedError,
    ConfigurationError,
    DecodeError,
    LLMProviderError,
    ModelInactiveError,
    ModelNotFoundError,
    NotFoundError,
    TutorChatError,
    ValidationError,
)
from tutor_chat.log import get_logger

logger = get_logger(__name__)

_STATUS: list[tuple[type[TutorChatError], int]] = [
    (NotFoundError, 404),
    (ModelNotFoundError, 404),
    (AccessDeniedError, 403),
    (ValidationError, 400),
    (ModelInactiveError, 400),
    (LLMProviderError, 502),
    (DecodeError, 502),
    (ConfigurationError, 503),
]


def status_for(exc: TutorChatError) -> int:
    for exc_type, status in _STATUS:
        if isinstance(exc, exc_type):
            return status
    return 500


def _message_for(exc: TutorChatError) -> str:
    if isinstance(exc, LLMProviderError):
        return exc.user_message
    return str(exc)


async def _domain_error(request: Request, exc: TutorChatError) -> JSONResponse:
    status = status_for(exc)
    log = logger.error if status >= 500 else logger.info
    log("request_failed", path=request.url.path, status=status, error_type=type(exc).__name__, error=str(exc))
    return JSONResponse(status_code=status, content=envelope(success=False, message=_message_for(exc)))


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=envelope(success=False, message=str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())
    return JSONResponse(status_code=400, content=envelope(success=False, message=f"Invalid request: {problems}"))


async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_unhandled_error", path=request.url.path)
    return JSONResponse(status_code=500, content=envelope(success=False, message="An unexpected error occurred"))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TutorChatError, _domain_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(Exception, _unexpected_error)
