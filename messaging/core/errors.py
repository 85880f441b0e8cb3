"""
Error taxonomy raised by the messaging services.

Each error carries the HTTP status the API layer answers with, so the
services stay free of FastAPI imports.
"""


class MessagingError(Exception):
    """Base class for errors surfaced to callers."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(MessagingError):
    """Malformed or missing required fields, or an empty audience."""

    status_code = 400


class NotFoundError(MessagingError):
    """Missing message, template or recipient record."""

    status_code = 404


class ForbiddenError(MessagingError):
    """Caller has no access to the message or addressing mode."""

    status_code = 403


class TemplateError(MessagingError):
    """Template references a placeholder outside the allow-list."""

    status_code = 422


class TemplateNotFoundError(NotFoundError, TemplateError):
    """Unknown template id or version."""

    status_code = 404
