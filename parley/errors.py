"""Exception hierarchy for Parley.

Cancellation is not an error: an aborted request completes normally with
its partial text and an ``aborted`` finish reason.
"""

from __future__ import annotations


class ParleyError(Exception):
    """Base class for all Parley errors."""


class ConfigError(ParleyError):
    """Invalid budget, unknown provider, or other bad configuration.

    Raised before any network call is made.
    """


class AssemblyError(ParleyError):
    """Broken or cyclic message thread."""


class ProviderError(ParleyError):
    """Provider transport or API failure surfaced after recovery attempts."""

    def __init__(self, message: str, status_code: int | None = None, error_type: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type


class RecoverableStreamError(ProviderError):
    """Known stream-termination fault; the buffered text is still usable."""
