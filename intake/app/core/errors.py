"""
Exception taxonomy for the registration intake service.

Every error raised by the intake pipeline derives from IntakeError and
carries the HTTP status it maps to, a short human-readable message and an
optional `errors` payload (per-field messages, or the underlying
dependency error text). The API layer renders these into the APIResponse
envelope; nothing below the API layer imports FastAPI.
"""

from typing import Any, Optional


class IntakeError(Exception):
    """Base exception for all registration intake errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        errors: Optional[Any] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.errors = errors
        if status_code is not None:
            self.status_code = status_code

    def __str__(self) -> str:
        if self.errors is None or isinstance(self.errors, (list, dict)):
            return self.message
        return f"{self.message}: {self.errors}"


# ---------------------------------------------------------------------------
# Client input (4xx)
# ---------------------------------------------------------------------------

class ClientInputError(IntakeError):
    """Malformed, incomplete or otherwise unacceptable caller input."""

    status_code = 400


class BindError(ClientInputError):
    """The request body could not be bound to the expected form shape."""

    def __init__(self, errors: Optional[Any] = None):
        super().__init__("Invalid input format", errors=errors)


class FormValidationError(ClientInputError):
    """One or more declarative field constraints were violated."""

    def __init__(self, field_errors: list[dict[str, str]]):
        super().__init__("Validation failed", errors=field_errors)
        self.field_errors = field_errors


class InvalidArgumentError(ClientInputError):
    """A request parameter holds a value outside its accepted domain."""


class UnauthorizedError(ClientInputError):
    """Missing or rejected upload token."""

    status_code = 401


# ---------------------------------------------------------------------------
# Server side (5xx)
# ---------------------------------------------------------------------------

class DependencyError(IntakeError):
    """
    An external collaborator failed: CAPTCHA provider, message broker or
    object-storage signing. `errors` carries the underlying error text.
    """

    status_code = 500


class BrokerTimeoutError(DependencyError):
    """The broker did not reply within the request timeout."""


class ConfigurationError(IntakeError):
    """A setting required by the current operation is missing."""

    status_code = 500

    def __init__(self, setting: str):
        super().__init__(f"Missing {setting} environment variable")
        self.setting = setting
