from __future__ import annotations


class CertifyError(Exception):
    """Base for every error the core hands back to its callers."""

    kind = "error"
    status_code = 400
    retryable = False

    def __init__(self, message: str | None = None, **details):
        super().__init__(message or self.default_message)
        self.details = details

    default_message = "Request failed."

    def to_dict(self) -> dict:
        payload = {
            "error": self.kind,
            "message": str(self),
            "retryable": self.retryable,
        }
        if self.details:
            payload.update(self.details)
        return payload


class ValidationError(CertifyError):
    kind = "validation_error"
    default_message = "Invalid input."


class NotFound(CertifyError):
    kind = "not_found"
    status_code = 404
    default_message = "No certificate found with the provided details."


class QuotaExceeded(CertifyError):
    kind = "quota_exceeded"
    status_code = 403
    default_message = "Plan limit reached."


class RenderFailure(CertifyError):
    kind = "render_failure"
    status_code = 503
    retryable = True
    default_message = "Failed to generate certificate."


class TemplateUnavailable(RenderFailure):
    kind = "template_unavailable"
    default_message = "Certificate template unavailable."


class PersistenceFailure(CertifyError):
    kind = "persistence_failure"
    status_code = 409
    retryable = True
    default_message = "Could not save changes."


class InvalidTransition(CertifyError):
    kind = "invalid_state"
    status_code = 409
    default_message = "That step is not available right now."
