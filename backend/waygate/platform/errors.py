"""
Error types shared across Waygate services.

An AppError carries a stable machine-readable code, a message that is safe
to show a client, and the HTTP status a web layer should answer with.
Neither stack traces nor credential material ever go into the shape.

Status codes used by the credential core:
- 400: invalid input to a store operation
- 404: credential (or other resource) does not exist for the caller
"""

from typing import Any, Optional

from fastapi import status


class AppError(Exception):
    """Base error with a consistent, serializable shape."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        """API error body: {"error": {code, message, details}}."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AppError):
    """Rejected input (400). `field` names the offending argument when known."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if field:
            details["field"] = field
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )
        self.field = field


class NotFoundError(AppError):
    """
    Missing resource (404).

    Also used for resources that exist but belong to another tenant, so
    ids cannot be probed across tenants.
    """

    def __init__(self, resource: str, identifier: Optional[str] = None, code: str = "NOT_FOUND"):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
        )
