"""
Exception hierarchy for the ARN reconciler.

Remote errors describe the outcome of a single call to the push-notification
service and drive the retry policy. Everything else is fatal for the run.
"""

from __future__ import annotations

from typing import Optional


class ReconcilerError(Exception):
    """Base class for all reconciler errors."""


# Remote call failures


class RemoteError(ReconcilerError):
    """
    A single remote call failed.

    `code` carries the service error code when one is available so it can be
    recorded alongside the outcome.
    """

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code

    @property
    def error_type(self) -> str:
        return self.code or type(self).__name__


class EndpointNotFoundError(RemoteError):
    """The endpoint does not exist on the remote service."""


class InvalidEndpointError(RemoteError):
    """The endpoint identifier is malformed."""


class AuthExpiredError(RemoteError):
    """The access grant used for the call is invalid or expired."""


class RemoteCallError(RemoteError):
    """Any other failure: throttling, timeouts, service errors."""


# Fatal failures


class GrantAcquisitionError(ReconcilerError):
    """A grant could not be obtained from the broker."""


class PersistenceError(ReconcilerError):
    """Batch outcomes could not be written to the store."""


class ResumeError(ReconcilerError):
    """A run cannot be resumed (unknown, empty, malformed, or already exhausted)."""


class ProgressError(ReconcilerError):
    """The watermark would move backwards."""


class ConfigurationError(ReconcilerError):
    """Invalid source descriptor or settings."""


TERMINAL_REMOTE_ERRORS = (EndpointNotFoundError, InvalidEndpointError)


__all__ = [
    "ReconcilerError",
    "RemoteError",
    "EndpointNotFoundError",
    "InvalidEndpointError",
    "AuthExpiredError",
    "RemoteCallError",
    "GrantAcquisitionError",
    "PersistenceError",
    "ResumeError",
    "ProgressError",
    "ConfigurationError",
    "TERMINAL_REMOTE_ERRORS",
]
