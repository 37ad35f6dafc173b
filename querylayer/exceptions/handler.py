from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from querylayer.logging.logger import get_logger
from querylayer.response import ResponseModel
from typing import Any
from querylayer.config import settings

logger = get_logger("exception_handler")

class QueryLayerException(Exception):
    """Base class for repository-layer exceptions."""
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, status_code: int = None, code: int = None, detail: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code or self.status_code
        self.code = code or self.status_code
        self.detail = detail


class ValidationError(QueryLayerException):
    """Payload names a field the model does not allow to be assigned."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class RecordNotFoundError(QueryLayerException):
    """Raised by the *_or_fail operations when the target record is missing."""
    status_code = status.HTTP_404_NOT_FOUND


class ConfigurationError(QueryLayerException):
    """Repository or registry wired to something it cannot work with."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    trace_id = getattr(request.state, "trace_id", "unknown")

    if isinstance(exc, ConfigurationError):
        logger.error(f"Trace[{trace_id}] - ConfigurationError: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=ResponseModel.fail(code=exc.code, message="Service misconfigured")
        )

    if isinstance(exc, QueryLayerException):
        logger.warning(f"Trace[{trace_id}] - {type(exc).__name__}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=ResponseModel.fail(code=exc.code, message=exc.message, data=exc.detail)
        )

    if isinstance(exc, RequestValidationError):
        logger.error(f"Trace[{trace_id}] - ValidationError: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=ResponseModel.fail(code=422, message="Invalid request parameters", data=exc.errors())
        )

    if isinstance(exc, SQLAlchemyError):
        logger.critical(f"Trace[{trace_id}] - DatabaseError: {str(exc)}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ResponseModel.fail(code=500, message="Service temporarily unavailable")
        )

    logger.opt(exception=True).error(f"Trace[{trace_id}] - UncaughtException: {str(exc)}")

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ResponseModel.fail(
            code=500,
            message="System busy, please try again later",
            data={"trace_id": trace_id} if settings.DEBUG else None
        )
    )
