# sophie_hub/utils/permissions.py

import hmac
from functools import wraps

from flask import request
from flask_login import current_user

from sophie_hub.api.response import ErrorCodes, api_error, forbidden, unauthorized
from sophie_hub.settings import get_settings


def is_admin(user):
    """Check if user may run syncs and edit mappings"""
    if not user or not user.is_authenticated:
        return False
    return bool(getattr(user, "is_admin", False))


def admin_required_api(func):
    """Decorator for JSON endpoints that need an authenticated admin"""

    @wraps(func)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            return unauthorized()
        if not is_admin(current_user):
            return forbidden("Admin access required")
        return func(*args, **kwargs)

    return decorated_function


def cron_secret_required(func):
    """Decorator for scheduler endpoints authenticated by ``Authorization: Bearer <CRON_SECRET>``"""

    @wraps(func)
    def decorated_function(*args, **kwargs):
        secret = get_settings().get("cron_secret")
        if not secret:
            return api_error(ErrorCodes.INTERNAL_ERROR, "Cron secret is not configured", 500)
        header = request.headers.get("Authorization", "")
        if not hmac.compare_digest(header.encode("utf-8"), f"Bearer {secret}".encode("utf-8")):
            return api_error(ErrorCodes.UNAUTHORIZED, "Invalid cron secret", 401)
        return func(*args, **kwargs)

    return decorated_function
