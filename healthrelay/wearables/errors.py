"""Exception hierarchy for the acquisition pipeline.

Provider errors never leave the orchestrator: they are turned into a
fallback or a DISCONNECTED cycle.  ``SyncError`` is raised by the
dispatcher and mapped to DISCONNECTED by the orchestrator as well.
"""

from __future__ import annotations


class AcquisitionError(Exception):
    """Base exception for HealthRelay acquisition errors."""


class PermissionDenied(AcquisitionError):
    """The user declined a required data-read scope."""


class ProviderError(AcquisitionError):
    """A provider failed while authorizing or fetching."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ProviderUnavailable(ProviderError):
    """Provider is not installed, unreachable, or its fetch raised."""


class SyncError(AcquisitionError):
    """The backend was unreachable or rejected the payload.

    Attributes:
        status_code: HTTP status if a response was received, else None.
        retryable:   Whether another attempt could plausibly succeed.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
