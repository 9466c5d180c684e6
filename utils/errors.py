"""Typed domain errors rendered as JSON by the app-level error handler."""


class DomainError(Exception):
    """Base class for expected failures that map onto an HTTP status."""

    status_code = 400
    code = "domain_error"
    default_message = "Request could not be processed."

    def __init__(self, message: str | None = None, **details) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidInput(DomainError):
    status_code = 400
    code = "invalid_input"
    default_message = "Malformed or missing fields."


class OtpMismatch(InvalidInput):
    code = "otp_mismatch"
    default_message = "Invalid OTP."


class NotFound(DomainError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found."


class InvalidOrExpired(NotFound):
    """Raised when a tag token has no active match or is past its expiry."""

    code = "invalid_or_expired"
    default_message = "Invalid or expired tag."


class Expired(DomainError):
    status_code = 410
    code = "expired"
    default_message = "Validity window has passed."


class Conflict(DomainError):
    status_code = 409
    code = "conflict"
    default_message = "Resource already exists."


class AlreadyAssigned(Conflict):
    code = "already_assigned"
    default_message = "Physical UID is already bound to another active tag."


class Forbidden(DomainError):
    status_code = 403
    code = "forbidden"
    default_message = "Not allowed."


class FeedbackNotEligible(Forbidden):
    code = "feedback_not_eligible"
    default_message = "Visit is not eligible for feedback."


class ExternalUnavailable(DomainError):
    """Raised when the SMS gateway or ledger sink cannot be reached."""

    status_code = 503
    code = "external_unavailable"
    default_message = "External service unavailable."
