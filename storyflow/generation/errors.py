"""Errors raised by generator backends.

Every backend failure maps to a ``Failed`` outcome; none of them is retried.
``detail`` keeps the raw cause (stderr, payload excerpt) for operators.
"""

from __future__ import annotations


class GeneratorError(Exception):
    """Base class for boundary-call failures."""

    def __init__(self, reason: str, detail: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.detail = detail


class BackendUnavailableError(GeneratorError):
    """The backend could not be reached, could not start, or exited abnormally."""


class MalformedPayloadError(GeneratorError):
    """The backend answered, but not with something we can turn into text."""
