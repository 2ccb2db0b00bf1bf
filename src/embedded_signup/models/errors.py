"""Exception hierarchy for the Embedded Signup connection flow.

Services raise these; the connection state machine catches them and turns
them into terminal states, so none of them reach the host application.
"""

from __future__ import annotations


class EmbeddedSignupError(Exception):
    """Base exception for all Embedded Signup errors."""

    pass


class ProviderUnavailable(EmbeddedSignupError):
    """Raised when the provider cannot be used at all on this page.

    Covers both a missing or invalid provider configuration and an SDK that
    failed to load. Not retryable without a reload.
    """

    pass


class ConfigurationError(ProviderUnavailable):
    """Raised when the provider configuration cannot be fetched or is incomplete."""

    pass


class SdkLoadError(ProviderUnavailable):
    """Raised when the provider SDK script fails to load."""

    pass


class SdkNotReady(EmbeddedSignupError):
    """Raised when a launch is attempted before the SDK has initialized."""

    pass


class ExchangeFailed(EmbeddedSignupError):
    """Raised when the backend rejects or fails the code exchange.

    Attributes:
        reason: Human-readable reason, verbatim from the backend when it sent one.
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
