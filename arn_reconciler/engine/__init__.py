"""
Reconciliation engine: pure policy and state, no direct I/O.
"""

from arn_reconciler.engine.batching import Chunk, iter_chunks, split_batches
from arn_reconciler.engine.classifier import Classification, classify_deletion, classify_status
from arn_reconciler.engine.credentials import CredentialManager, CredentialState
from arn_reconciler.engine.progress import RunId, RunTracker
from arn_reconciler.engine.retry import AttemptResult, RetryController

__all__ = [
    "AttemptResult",
    "Chunk",
    "Classification",
    "CredentialManager",
    "CredentialState",
    "RetryController",
    "RunId",
    "RunTracker",
    "classify_deletion",
    "classify_status",
    "iter_chunks",
    "split_batches",
]
