"""
Error taxonomy shared by the services and the HTTP layer.

Services raise these; ``dailycup.main`` renders them as
``{"success": false, "message": ...}`` with the matching status code.
"""
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class DomainError(Exception):
    status_code = 400
    public_message: str | None = None

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body = {"success": False, "message": self.public_message or self.message}
        if self.public_message is None:
            body.update(self.details)
        return body


class ValidationError(DomainError):
    status_code = 400


class AuthError(DomainError):
    status_code = 401


class ForbiddenError(AuthError):
    status_code = 403


class NotFoundError(DomainError):
    status_code = 404


class ConflictError(DomainError):
    status_code = 409


class RateLimitError(DomainError):
    status_code = 429


class ExternalServiceError(DomainError):
    status_code = 502


class PersistenceError(DomainError):
    status_code = 500
    public_message = "Internal server error"


def best_effort(label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    """Run a side effect whose failure must never reach the caller."""
    try:
        fn(*args, **kwargs)
    except Exception:
        logger.exception("Side effect %s failed", label)
