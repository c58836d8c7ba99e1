"""
JSON envelope shared by every API endpoint.

Success: ``{"success": true, "data": ..., "meta": {"timestamp": ...}}``
Error:   ``{"success": false, "error": {"code", "message", "details"?}, "meta": {...}}``
"""

from __future__ import annotations

from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any

from flask import jsonify


class ErrorCodes:
    # Client errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"

    # Server errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    EXTERNAL_API_ERROR = "EXTERNAL_API_ERROR"


def _meta() -> dict[str, str]:
    return {"timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")}


def api_success(data: Any = None, status: int | HTTPStatus = HTTPStatus.OK, headers: dict | None = None):
    response = jsonify({"success": True, "data": data, "meta": _meta()})
    response.status_code = int(status)
    if headers:
        response.headers.update(headers)
    return response


def api_error(
    code: str,
    message: str,
    status: int | HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR,
    details: Any = None,
):
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    response = jsonify({"success": False, "error": error, "meta": _meta()})
    response.status_code = int(status)
    return response


def validation_error(message: str = "Invalid input", details: Any = None):
    return api_error(ErrorCodes.VALIDATION_ERROR, message, HTTPStatus.BAD_REQUEST, details)


def unauthorized(message: str = "Authentication required"):
    return api_error(ErrorCodes.UNAUTHORIZED, message, HTTPStatus.UNAUTHORIZED)


def forbidden(message: str = "Access denied"):
    return api_error(ErrorCodes.FORBIDDEN, message, HTTPStatus.FORBIDDEN)


def not_found(resource: str = "Resource"):
    return api_error(ErrorCodes.NOT_FOUND, f"{resource} not found", HTTPStatus.NOT_FOUND)


def conflict(message: str, details: Any = None):
    return api_error(ErrorCodes.CONFLICT, message, HTTPStatus.CONFLICT, details)


def internal_error():
    return api_error(ErrorCodes.INTERNAL_ERROR, "An unexpected error occurred", HTTPStatus.INTERNAL_SERVER_ERROR)


def database_error():
    return api_error(ErrorCodes.DATABASE_ERROR, "Database error", HTTPStatus.INTERNAL_SERVER_ERROR)


def external_api_error(service: str, message: str | None = None):
    return api_error(ErrorCodes.EXTERNAL_API_ERROR, message or f"{service} API error", HTTPStatus.BAD_GATEWAY)
