"""
ARN Reconciler - resumable reconciliation of SNS platform endpoints.

Scans an inventory table of endpoint ARNs in id order, checks each endpoint's
status against the remote service, and records exactly one outcome per endpoint
per run in PostgreSQL. A second pass can delete the endpoints a check run found
disabled. Runs can be interrupted at any point and resumed from the last
persisted batch.

Layers:

- domain: models and the error taxonomy
- engine: classifier, retry controller, credential manager, batching, progress
- infrastructure: PostgreSQL store and AWS adapters
- orchestrator / main: the run loop and the Typer CLI
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from arn_reconciler.config import Settings, get_settings
from arn_reconciler.orchestrator import ReconciliationOrchestrator, build_orchestrator
from arn_reconciler.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "get_settings",
    # Orchestration
    "ReconciliationOrchestrator",
    "build_orchestrator",
    # Logging
    "configure_logging",
    "get_logger",
]
