from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from interview_credits.core.exceptions import ServiceError

logger = logging.getLogger(__name__)

# ServiceError.code -> HTTP status
SERVICE_ERROR_STATUS = {
    "validation_error": 400,
    "invalid_amount": 400,
    "unauthorized": 401,
    "insufficient_balance": 402,
    "insufficient_credits": 402,
    "forbidden": 403,
    "not_found": 404,
    "invalid_state": 409,
    "rule_limit_reached": 409,
    "store_unavailable": 503,
}


def register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers for consistent JSON errors.

    Response envelope shape:
    {
      "type": "error",
      "error": {"type": "<error_code>", "message": "<human message>"},
      "request_id": "<uuid>"
    }
    """

    def _request_id(request: Request) -> str:
        rid = request.headers.get("x-request-id") or getattr(request.state, "request_id", None)
        return str(rid) if rid else str(uuid.uuid4())

    def _json_error(request: Request, status: int, err_type: str, message: str, extra: dict | None = None) -> JSONResponse:
        rid = _request_id(request)
        error = {"type": err_type, "message": message}
        if extra:
            error.update(extra)
        return JSONResponse(
            status_code=status,
            content={
                "type": "error",
                "error": error,
                "request_id": rid,
            },
            headers={"X-Request-ID": rid},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):  # type: ignore[override]
        code_map = {
            400: "bad_request",
            401: "unauthorized",
            402: "payment_required",
            403: "forbidden",
            404: "not_found",
            409: "conflict",
            422: "validation_error",
            503: "service_unavailable",
        }
        err_type = code_map.get(exc.status_code, "api_error")
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return _json_error(request, exc.status_code, err_type, detail or "Request failed")

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):  # type: ignore[override]
        status = SERVICE_ERROR_STATUS.get(exc.code, 400)
        if status >= 500:
            logger.error("ServiceError: %s", exc)
        else:
            logger.info("ServiceError (%s): %s", exc.code, exc)
        extra = None
        if hasattr(exc, "available") and hasattr(exc, "required"):
            extra = {"available": exc.available, "required": exc.required}
        return _json_error(request, status, exc.code, str(exc), extra)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        return _json_error(request, 400, "validation_error", "Missing or invalid request fields")

    @app.exception_handler(PydanticValidationError)
    async def pydantic_validation_handler(request: Request, exc: PydanticValidationError):  # type: ignore[override]
        return _json_error(request, 422, "validation_error", "Invalid request payload")

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):  # type: ignore[override]
        logger.exception("Database error")
        return _json_error(request, 500, "database_error", "An internal database error occurred.")

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        logger.exception("Unhandled error")
        return _json_error(request, 500, "api_error", "Internal server error")
