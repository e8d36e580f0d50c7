from typing import Optional


class HostingError(Exception):
    """Base error rendered as a JSON ``{"error": ...}`` response."""

    status_code = 400
    default_message = "Bad request"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)

    def to_payload(self) -> dict:
        return {"error": str(self)}


class ValidationError(HostingError):
    """Raised when request input is missing or malformed."""

    default_message = "Invalid request"


class DuplicateUsername(ValidationError):
    default_message = "User already exists"


class AuthFailure(HostingError):
    """Raised for any failed login.

    The message never says whether the user is unknown or the password is
    wrong.
    """

    default_message = "Invalid credentials"

    def __init__(self) -> None:
        super().__init__(self.default_message)


class Unauthorized(HostingError):
    status_code = 401
    default_message = "Unauthorized"


class UnsupportedFileType(ValidationError):
    default_message = "File type not allowed. Only .lua and .txt"


class PayloadTooLarge(ValidationError):
    default_message = "File too large"


class BadRequest(HostingError):
    default_message = "Bad request"


class NotFound(HostingError):
    status_code = 404
    default_message = "File not found"


class StoreError(HostingError):
    """Raised when persisted state cannot be read or written."""

    status_code = 500
    default_message = "Internal storage error"
