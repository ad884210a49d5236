from typing import Any

from fastapi import status


class AppError(Exception):
    code: str = "APP_ERROR"
    message: str = "Application error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    details: Any | None = None

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: Any | None = None,
    ):
        if message is not None:
            self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        if details is not None:
            self.details = details

        super().__init__(self.message)


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    message = "Validation error"
    status_code = status.HTTP_400_BAD_REQUEST


class AuthorizationError(AppError):
    code = "PERMISSION_DENIED"
    message = "Insufficient permissions"
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AppError):
    code = "NOT_FOUND"
    message = "Resource not found"
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(AppError):
    code = "CONFLICT_ERROR"
    message = "Resource conflict"
    status_code = status.HTTP_409_CONFLICT


class ConfigurationError(AppError):
    code = "CONFIGURATION_ERROR"
    message = "Feature is not enabled in configuration"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class TransactionFailure(AppError):
    code = "TRANSACTION_FAILURE"
    message = "Store transaction failed and was rolled back"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class CacheBackendError(AppError):
    code = "CACHE_BACKEND_ERROR"
    message = "Cache backend operation failed"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


def error_payload(
    code: str,
    message: str,
    details: Any | None = None,
) -> dict[str, Any]:
    return {"error": {"code": code, "message": message, "details": details}}
