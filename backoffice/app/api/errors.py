from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from backoffice.services.errors import (
    AccessDenied,
    BackofficeError,
    ConcurrencyConflict,
    EntityNotFound,
    ValidationFailure,
)

log = logging.getLogger(__name__)


def _rid() -> str:
    return uuid.uuid4().hex


def _body(code: str, message, **extra) -> dict:
    error = {"code": code, "message": message}
    error.update(extra)
    return {"success": False, "error": error, "request_id": _rid()}


def _status_for(exc: BackofficeError) -> int:
    if isinstance(exc, EntityNotFound):
        return 404
    if isinstance(exc, ValidationFailure):
        return 400
    if isinstance(exc, AccessDenied):
        return 403
    if isinstance(exc, ConcurrencyConflict):
        return 409
    return 500


# ---------- Handlers ----------
def backoffice_exception_handler(request: Request, exc: BackofficeError):
    status = _status_for(exc)
    # Pas de détail interne côté client
    message = exc.message if status < 500 else "Internal Server Error"
    details = exc.details() if status < 500 else {}
    return JSONResponse(status_code=status, content=jsonable_encoder(_body(exc.code, message, **details)))


def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content=_body("http_error", exc.detail))


def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder(_body("validation_error", "Invalid input data", details=exc.errors())),
    )


def generic_exception_handler(request: Request, exc: Exception):
    log.exception("Unhandled exception on path %s", request.url.path)
    return JSONResponse(status_code=500, content=_body("server_error", "Internal Server Error"))


def setup_exception_handlers(app: FastAPI) -> FastAPI:
    app.add_exception_handler(BackofficeError, backoffice_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
    return app
