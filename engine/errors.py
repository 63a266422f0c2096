"""Error taxonomy shared by the engine components.

Every error carries the HTTP status the broker renders it with, plus an
optional ``extra`` mapping merged into the response body (remediation hints
such as the list of available versions).
"""

from __future__ import annotations


class EngineError(Exception):
    status_code = 500

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra


class ValidationError(EngineError):
    """Missing or malformed input."""

    status_code = 400


class InvalidIdentifier(ValidationError):
    """An identifier that is not a well-formed UUID."""


class NotFound(EngineError):
    """Service, version, fixture or task absent."""

    status_code = 404


class StateConflict(EngineError):
    """A status transition attempted from an invalid source state."""

    status_code = 409


class DuplicateSuppressed(EngineError):
    """A uniqueness violation resolved internally. Never reaches a caller."""

    status_code = 409
