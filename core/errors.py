"""
Shared error types for core services.
"""

from typing import Optional


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class GenerationError(RuntimeError):
    """Raised when the character/prediction text provider fails."""


class IncompleteResultError(GenerationError):
    """Raised when the text provider answered but required fields are missing."""


class ImageProviderError(RuntimeError):
    """Raised when the image provider is unavailable."""


class IdentityProviderError(RuntimeError):
    """Raised when the hosted identity provider cannot be reached."""


class PredictionRejected(Exception):
    """A request rejection that maps to a client-facing error envelope."""

    def __init__(
        self,
        status_code: int,
        code: str,
        error: str,
        message: str,
        extra: Optional[dict] = None,
        headers: Optional[dict] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.error = error
        self.message = message
        self.extra = extra or {}
        self.headers = headers or {}

    def to_payload(self) -> dict:
        payload = {"error": self.error, "message": self.message, "code": self.code}
        payload.update(self.extra)
        return payload
