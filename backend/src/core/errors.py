from typing import Any, Dict, Optional


class AppError(Exception):
    """
    Base error for everything the chat core raises on purpose.
    Carries a stable code and the HTTP status the API layer should use.
    """
    code = "INTERNAL_SERVER_ERROR"
    status_code = 500
    default_message = "Internal server error occurred"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


# ------------------- REQUEST-LEVEL ERRORS -------------------

class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status_code = 422
    default_message = "Validation failed"


class ConflictError(AppError):
    code = "CONFLICT"
    status_code = 409
    default_message = "Request conflicts with the current state"


class AuthorizationError(AppError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Access denied"


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class BudgetExceeded(AppError):
    code = "BUDGET_EXCEEDED"
    status_code = 413
    default_message = "Message is too long to fit the model context window"


class RateLimitExceeded(AppError):
    code = "RATE_LIMITED"
    status_code = 429
    default_message = "Too many messages, please slow down"


class PersistenceError(AppError):
    code = "DATABASE_ERROR"
    status_code = 503
    default_message = "Chat storage is temporarily unavailable"


# ------------------- INTERNAL ERRORS -------------------

class ProviderConfigError(AppError):
    """Unknown provider name or missing credential (raised at startup)."""
    code = "PROVIDER_CONFIG_ERROR"
    default_message = "AI provider is not configured"


class ProviderError(AppError):
    """
    One failed call to the remote model.
    Never leaves the gateway: it is turned into error metadata there.
    """
    code = "PROVIDER_ERROR"
    status_code = 502
    default_message = "AI provider call failed"

    def __init__(self, message: Optional[str] = None, *, status: Optional[int] = None,
                 retryable: bool = False, error_code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.retryable = retryable
        if error_code:
            self.code = error_code

