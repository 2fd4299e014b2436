"""
API Error Handling
Every error leaves the API as {"error": {"code": ..., "message": ...}}.

    NotFoundError            → 404
    ConfigError / validation → 400
    RunStateError            → 409
    bad webhook signature    → 401
    anything else            → 500
"""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from pipeline_runner.core.errors import CONFIG_ERROR, NOT_FOUND, RUN_STATE_ERROR, PipelineError

logger = logging.getLogger(__name__)

_STATUS_BY_KIND = {
    NOT_FOUND: 404,
    CONFIG_ERROR: 400,
    RUN_STATE_ERROR: 409,
}


class APIError(Exception):
    """Error raised by route handlers with an explicit HTTP status."""

    def __init__(self, code: str, message: str, status_code: int = 400) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class InvalidSignatureError(APIError):
    def __init__(self, message: str = "Webhook signature mismatch") -> None:
        super().__init__(code="INVALID_SIGNATURE", message=message, status_code=401)


def error_body(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message))


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    status_code = _STATUS_BY_KIND.get(exc.kind, 500)
    if status_code == 500:
        logger.error("Unhandled %s on %s: %s", exc.kind, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content=error_body(exc.kind, exc.message))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', 'invalid')}"
        for err in exc.errors()
    )
    return JSONResponse(status_code=400, content=error_body("INVALID_REQUEST", problems))


async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unexpected error on %s", request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=error_body("INTERNAL_ERROR", f"An unexpected error occurred ({type(exc).__name__})"),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, generic_error_handler)
