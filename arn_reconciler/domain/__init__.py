"""
Domain package for the ARN reconciler.

Exports the core data definitions and the error taxonomy shared by the engine,
the orchestrator and the infrastructure adapters.
"""

from arn_reconciler.domain.errors import (
    AuthExpiredError,
    ConfigurationError,
    EndpointNotFoundError,
    GrantAcquisitionError,
    InvalidEndpointError,
    PersistenceError,
    ProgressError,
    ReconcilerError,
    RemoteCallError,
    RemoteError,
    ResumeError,
)
from arn_reconciler.domain.models import (
    EndpointAttributes,
    Grant,
    Outcome,
    OutcomeKind,
    Record,
    Run,
    RunListing,
    RunMode,
    RunState,
    RunSummary,
    SourceDescriptor,
    WatermarkInfo,
)

__all__ = [
    # Models
    "EndpointAttributes",
    "Grant",
    "Outcome",
    "OutcomeKind",
    "Record",
    "Run",
    "RunListing",
    "RunMode",
    "RunState",
    "RunSummary",
    "SourceDescriptor",
    "WatermarkInfo",
    # Errors
    "AuthExpiredError",
    "ConfigurationError",
    "EndpointNotFoundError",
    "GrantAcquisitionError",
    "InvalidEndpointError",
    "PersistenceError",
    "ProgressError",
    "ReconcilerError",
    "RemoteCallError",
    "RemoteError",
    "ResumeError",
]
