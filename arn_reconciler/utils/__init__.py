"""
Utilities package for the ARN reconciler.

Exports shared helpers for cross-cutting concerns (logging). Keep this package
lightweight and free of domain-specific logic.
"""

from arn_reconciler.utils.logging import configure_logging, get_logger

__all__ = [
    "configure_logging",
    "get_logger",
]
