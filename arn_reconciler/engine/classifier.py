"""
Outcome classification for status checks and deletions.

Both functions are pure: they look at what a retried remote call produced and
map it onto exactly one outcome kind. Retrying and I/O happen elsewhere.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from arn_reconciler.domain.errors import (
    AuthExpiredError,
    EndpointNotFoundError,
    InvalidEndpointError,
    RemoteError,
)
from arn_reconciler.domain.models import EndpointAttributes, OutcomeKind
from arn_reconciler.engine.retry import AttemptResult


@dataclass(frozen=True)
class Classification:
    kind: OutcomeKind
    reason: str
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def _failure_metadata(attempt: AttemptResult) -> Dict[str, Any]:
    error = attempt.error
    error_type = error.error_type if isinstance(error, RemoteError) else type(error).__name__
    return {"retry_count": attempt.retry_count, "error_type": error_type}


def classify_status(attempt: AttemptResult) -> Classification:
    """
    Map a status-check attempt onto ENABLED, DISABLED, NOT_FOUND, INVALID or ERROR.
    """
    if attempt.error is not None:
        metadata = _failure_metadata(attempt)
        message = str(attempt.error)
        if isinstance(attempt.error, EndpointNotFoundError):
            return Classification(OutcomeKind.NOT_FOUND, "endpoint not found", message, metadata)
        if isinstance(attempt.error, InvalidEndpointError):
            return Classification(OutcomeKind.INVALID, "invalid endpoint ARN", message, metadata)
        if isinstance(attempt.error, AuthExpiredError):
            reason = "credential refresh limit exceeded"
        else:
            reason = "max retries exceeded"
        return Classification(OutcomeKind.ERROR, reason, message, metadata)

    attributes: Optional[EndpointAttributes] = attempt.value
    if attributes is None:
        return Classification(
            OutcomeKind.NOT_FOUND,
            "endpoint attributes not found",
            metadata={"retry_count": attempt.retry_count},
        )

    metadata = {
        "enabled": attributes.enabled,
        "token": attributes.token_preview,
        "user_id": attributes.user_id,
        "custom_user_data": attributes.custom_user_data,
        "retry_count": attempt.retry_count,
    }
    if not attributes.enabled:
        return Classification(OutcomeKind.DISABLED, "endpoint disabled", metadata=metadata)
    if not attributes.token:
        return Classification(OutcomeKind.DISABLED, "no delivery token", metadata=metadata)
    return Classification(OutcomeKind.ENABLED, "endpoint enabled with token", metadata=metadata)


def classify_deletion(attempt: Optional[AttemptResult], dry_run: bool = False) -> Classification:
    """
    Map a deletion attempt onto DELETED, ALREADY_DELETED, DRY_RUN, INVALID or ERROR.

    A missing endpoint is an idempotent success, not an error.
    """
    if dry_run:
        return Classification(OutcomeKind.DRY_RUN, "dry run; endpoint not deleted")
    if attempt is None:
        raise ValueError("attempt is required unless dry_run is set")

    if attempt.error is None:
        return Classification(
            OutcomeKind.DELETED, "endpoint deleted", metadata={"retry_count": attempt.retry_count}
        )

    metadata = _failure_metadata(attempt)
    message = str(attempt.error)
    if isinstance(attempt.error, EndpointNotFoundError):
        return Classification(
            OutcomeKind.ALREADY_DELETED, "endpoint already deleted", message, metadata
        )
    if isinstance(attempt.error, InvalidEndpointError):
        return Classification(OutcomeKind.INVALID, "invalid endpoint ARN", message, metadata)
    return Classification(OutcomeKind.ERROR, "delete failed", message, metadata)


__all__ = ["Classification", "classify_deletion", "classify_status"]
