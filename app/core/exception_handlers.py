import logging
from fastapi import FastAPI, Request, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from app.core.errors import ValidationError
from app.schemas.response import ErrorResponse

log = logging.getLogger("uvicorn")


# ----------- Exception Handlers (called by FastAPI) -----------

def http_exception_handler(request: Request, exc: HTTPException):
    """Handles exceptions raised by HTTPException (e.g., 404, 500 from a route)."""
    body = ErrorResponse.build("http_error", exc.detail)
    return JSONResponse(status_code=exc.status_code, content=body)


def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handles request bodies that fail schema validation (422 Unprocessable Entity)."""
    body = ErrorResponse.build("validation_error", "Invalid input data", jsonable_encoder(exc.errors()))
    return JSONResponse(status_code=422, content=body)


def payload_validation_exception_handler(request: Request, exc: ValidationError):
    """Handles command payloads that do not match their command type (422)."""
    log.info(f"Rejected payload on {request.url.path}: {exc}")
    body = ErrorResponse.build("payload_validation_error", str(exc), exc.errors)
    return JSONResponse(status_code=422, content=body)


def generic_exception_handler(request: Request, exc: Exception):
    """Handles all unhandled exceptions (500 Internal Server Error)."""
    # Log the full traceback for debugging purposes
    log.error(f"Unhandled exception on path: {request.url.path}", exc_info=exc)
    body = ErrorResponse.build("server_error", "Internal Server Error")
    return JSONResponse(status_code=500, content=body)


# ----------- Registration Function -----------

def setup_exception_handlers(app: FastAPI):
    """Registers all custom exception handlers with the FastAPI application."""
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, payload_validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    return app
