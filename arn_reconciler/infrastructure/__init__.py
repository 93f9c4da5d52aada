"""
Infrastructure package for the ARN reconciler.

Centralizes I/O: PostgreSQL connectivity and the outcome store, plus the AWS
SNS/STS adapters. Keep this layer focused on I/O and resource management,
decoupled from the engine and orchestrator logic.
"""

from arn_reconciler.infrastructure.db_factory import get_sync_connection, get_sync_pool
from arn_reconciler.infrastructure.store import PostgresStore, ReconciliationStore

__all__ = [
    "PostgresStore",
    "ReconciliationStore",
    "get_sync_connection",
    "get_sync_pool",
]
