# sophie_hub/utils/error_handler.py
"""JSON error handlers so every failure leaves the app in the API envelope."""

from flask import current_app, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from sophie_hub.api.response import (
    ErrorCodes,
    api_error,
    database_error,
    internal_error,
    not_found,
)
from sophie_hub.models import db
from sophie_hub.sync.errors import SyncError

_HTTP_CODES = {
    400: ErrorCodes.VALIDATION_ERROR,
    401: ErrorCodes.UNAUTHORIZED,
    403: ErrorCodes.FORBIDDEN,
    404: ErrorCodes.NOT_FOUND,
    409: ErrorCodes.CONFLICT,
    429: ErrorCodes.RATE_LIMITED,
}


def _request_context():
    return {"path": request.path, "method": request.method}


def register_error_handlers(app):
    @app.errorhandler(404)
    def handle_not_found(error):
        return not_found("Resource")

    @app.errorhandler(SyncError)
    def handle_sync_error(error):
        db.session.rollback()
        current_app.logger.warning(
            "Sync error escaped a view: %s",
            error,
            extra={"sync_error_code": error.code, **_request_context()},
        )
        return api_error(error.code, str(error), error.http_status)

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(error):
        db.session.rollback()
        current_app.logger.exception("Database error", extra=_request_context())
        return database_error()

    @app.errorhandler(HTTPException)
    def handle_http_exception(error):
        code = _HTTP_CODES.get(error.code, ErrorCodes.INTERNAL_ERROR)
        return api_error(code, error.description or error.name, error.code)

    @app.errorhandler(500)
    def handle_internal_error(error):
        db.session.rollback()
        current_app.logger.error("Unhandled error: %s", error, extra=_request_context())
        return internal_error()

    return app
