from .response import ErrorCodes, api_error, api_success

__all__ = ["ErrorCodes", "api_error", "api_success"]
