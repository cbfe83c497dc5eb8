import uuid
import logging
from typing import Any, Optional
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder

from poscore.core.errors import PosError

log = logging.getLogger(__name__)

# Arabic texts for the generic envelopes; engine codes carry their own
GENERIC_AR = {
    "http_error": "تعذر تنفيذ الطلب.",
    "validation_error": "بيانات الإدخال غير صالحة.",
    "server_error": "حدث خطأ في الخادم.",
}


# Generate a clean request id for every response
def _rid():
    """Generates a unique request ID for tracing."""
    return uuid.uuid4().hex


def _envelope(status_code: int, error: dict) -> JSONResponse:
    body = {
        "success": False,
        "error": error,
        "request_id": _rid(),
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def _generic_error(code: str, message: str, details: Optional[Any] = None) -> dict:
    error = {
        "code": code,
        "message": message,
        "message_en": message,
        "message_ar": GENERIC_AR[code],
    }
    if details is not None:
        error["details"] = details
    return error


# ----------- Exception Handlers (called by FastAPI) -----------

def pos_error_handler(request: Request, exc: PosError):
    """Business rejections raised by the engines, with their closed code."""
    log.info(f"{request.method} {request.url.path} rejected: {exc.code}")
    return _envelope(exc.status_code, exc.to_dict())


def http_exception_handler(request: Request, exc: HTTPException):
    """Handles exceptions raised by HTTPException (e.g., 404, 500 from a router)."""
    return _envelope(exc.status_code, _generic_error("http_error", str(exc.detail)))


def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies never reach an engine (422)."""
    return _envelope(422, _generic_error("validation_error", "Invalid input data", exc.errors()))


def generic_exception_handler(request: Request, exc: Exception):
    """Handles all unhandled exceptions (500 Internal Server Error)."""
    log.exception(f"Unhandled exception on path: {request.url.path}", exc_info=exc)
    return _envelope(500, _generic_error("server_error", "Internal Server Error"))


# ----------- Registration Function -----------

def setup_exception_handlers(app: FastAPI):
    """Registers all custom exception handlers with the FastAPI application."""
    app.add_exception_handler(PosError, pos_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    return app
