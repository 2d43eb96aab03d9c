"""
Error taxonomy for the marketplace API.

Every failure raised by the domain modules is an AppError subclass carrying the
HTTP status it maps to. register_error_handlers() wires them into FastAPI so
handlers never have to build error responses themselves.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    status_code = 400


class AuthError(AppError):
    status_code = 401


class ForbiddenError(AuthError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class GatewayError(AppError):
    status_code = 500


class PersistenceError(AppError):
    status_code = 500


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    if first.get("type") == "missing":
        return f"{field} is required" if field else "Request body is required"
    return f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return error_response(ValidationError.status_code, _validation_message(exc))

    @app.exception_handler(PyMongoError)
    async def handle_database_error(request: Request, exc: PyMongoError):
        logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
        return error_response(PersistenceError.status_code, "Database error")
