"""
JSON error envelopes for every failure path.

- 4xx -> {"status": "fail", "message": ...}
- 5xx -> {"status": "error", "message": "Internal Server Error"}, stack outside production
"""
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tickserver.api.deps import get_settings
from tickserver.api.middleware import SECURITY_HEADERS
from tickserver.api.schemas import ErrorOut

logger = logging.getLogger("tick.api")


class AppError(Exception):
    """Operational error raised by a route; rendered with its own status code."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def status(self) -> str:
        return "fail" if 400 <= self.status_code < 500 else "error"


def _envelope(status_code: int, body: ErrorOut) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        return await unhandled_error_handler(request, exc)
    logger.warning("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
    return _envelope(exc.status_code, ErrorOut(status=exc.status, message=exc.message))


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404 and exc.detail == "Not Found":
        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        message = f"Route {target} not found"
    else:
        message = str(exc.detail)
    status = "fail" if exc.status_code < 500 else "error"
    response = _envelope(exc.status_code, ErrorOut(status=status, message=message))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    content = ErrorOut(status="fail", message="Request validation failed").model_dump(exclude_none=True)
    content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=jsonable_encoder(content))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled error on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    cfg = get_settings(request)
    body = ErrorOut(status="error", message="Internal Server Error")
    if not cfg.is_production:
        body = body.model_copy(
            update={"stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))}
        )
    response = _envelope(500, body)
    # Raised errors are rendered outside the middleware stack, so re-apply its headers here.
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    if request.headers.get("origin") == cfg.CORS_ORIGIN:
        response.headers.setdefault("Access-Control-Allow-Origin", cfg.CORS_ORIGIN)
        response.headers.setdefault("Access-Control-Allow-Credentials", "true")
        response.headers.setdefault("Vary", "Origin")
    return response


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
