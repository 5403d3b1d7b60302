# report_engine/logging/exception_handlers.py

import logging
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from report_engine.core.exceptions import (
    ConcurrentExecutionError,
    DuplicateTableError,
    ExecutionError,
    ExecutionTimeoutError,
    ExportError,
    InvalidExpressionError,
    QueryCompilationError,
    ReportEngineError,
    ReportNotFoundError,
    SchemaDefinitionError,
    UnknownColumnError,
    UnknownTableError,
)

logger = logging.getLogger(__name__)


def _status_for(exc: ReportEngineError) -> int:
    if isinstance(exc, (UnknownTableError, UnknownColumnError, ReportNotFoundError)):
        return 404
    if isinstance(exc, (DuplicateTableError, ConcurrentExecutionError)):
        return 409
    if isinstance(exc, (InvalidExpressionError, QueryCompilationError, ExportError, SchemaDefinitionError)):
        return 422
    if isinstance(exc, ExecutionTimeoutError):
        return 504
    return 500


async def report_engine_exception_handler(request: Request, exc: ReportEngineError):
    """Map the engine's exception taxonomy onto HTTP responses"""
    status_code = _status_for(exc)
    content = {"detail": str(exc), "type": type(exc).__name__}

    if isinstance(exc, QueryCompilationError):
        content["problems"] = exc.problems
    elif isinstance(exc, InvalidExpressionError):
        content["errors"] = exc.errors
    if isinstance(exc, ExecutionError) and exc.execution_id is not None:
        content["execution_id"] = exc.execution_id

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed with {type(exc).__name__}: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({status_code}): {exc}")

    return JSONResponse(status_code=status_code, content=content)


async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors"""
    logger.info(f"{request.method} {request.url.path} failed request validation")

    # Convert errors to a safe format for JSON response
    def convert_error(error):
        if isinstance(error, dict):
            return {k: convert_error(v) for k, v in error.items()}
        elif isinstance(error, list):
            return [convert_error(item) for item in error]
        else:
            return str(error)

    return JSONResponse(status_code=422, content={"detail": convert_error(exc.errors())})


async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions and log 5xx errors"""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} returned {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def general_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions"""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ReportEngineError, report_engine_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
