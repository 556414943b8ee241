from __future__ import annotations

from typing import Sequence


class IngestError(Exception):
    """Base class for failures raised out of the ingestion pipeline."""


class StorageError(IngestError):
    """The backing store could not be read or written; the whole batch is aborted."""


class RoutingError(IngestError):
    pass


class UserNotFound(RoutingError):
    def __init__(self, message: str = "User not found") -> None:
        super().__init__(message)


class AccountNotFound(RoutingError):
    def __init__(self, message: str = "Trading account not found") -> None:
        super().__init__(message)


class AuthenticationFailed(IngestError):
    def __init__(self, message: str = "Invalid webhook secret") -> None:
        super().__init__(message)


class AlertValidationError(IngestError):
    def __init__(self, message: str, details: Sequence[object] = ()) -> None:
        super().__init__(message)
        self.details = list(details)


class FormatNotDetected(IngestError):
    """No known source signature matched; the caller has to supply a mapping."""

    def __init__(self, headers: Sequence[str]) -> None:
        super().__init__("No auto-detected format; a manual column mapping is required")
        self.headers = list(headers)


class BrokerError(IngestError):
    """The broker API refused a request or answered with something unusable."""
