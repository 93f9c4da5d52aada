"""
Retry/backoff controller for single remote calls.

Wraps one remote operation with tenacity and applies the reconciliation policy:

- endpoint-not-found and invalid-endpoint failures are terminal: returned at once;
- auth failures force a credential refresh and are retried immediately without
  consuming a retry slot (bounded separately by `max_refreshes`);
- any other failure consumes a slot and is retried after
  `base_delay * slots_used` seconds (linear backoff), up to `max_retries`.
  Exceptions from outside the remote error vocabulary are wrapped in
  RemoteCallError, coded with their class name.

The controller never raises for a failed record; it returns an AttemptResult for
the classifier. GrantAcquisitionError and the other run-level ReconcilerErrors
propagate.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from tenacity import RetryCallState, Retrying, before_sleep_log, retry_if_exception

from arn_reconciler.domain.errors import (
    TERMINAL_REMOTE_ERRORS,
    AuthExpiredError,
    ReconcilerError,
    RemoteCallError,
    RemoteError,
)
from arn_reconciler.domain.models import Grant
from arn_reconciler.engine.credentials import CredentialManager
from arn_reconciler.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_REFRESHES = 2


@dataclass(frozen=True)
class AttemptResult:
    """
    What a retried remote call produced: a value on success, else the last error.
    """

    value: Any = None
    error: Optional[Exception] = None
    retry_count: int = 0
    refresh_count: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _AttemptLedger:
    retries: int = 0
    refreshes: int = 0


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, RemoteError) and not isinstance(exc, TERMINAL_REMOTE_ERRORS)


class RetryController:
    """
    Applies the retry policy around `operation(grant)` callables.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_refreshes: int = DEFAULT_MAX_REFRESHES,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_retries < 0 or max_refreshes < 0:
            raise ValueError("retry bounds must be non-negative")
        self.credentials = credentials
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_refreshes = max_refreshes
        self._sleep = sleep

    def attempt(self, operation: Callable[[Grant], Any]) -> AttemptResult:
        """
        Run `operation` under the retry policy and report what happened.

        Parameters
        ----------
        operation : Callable[[Grant], Any]
            Performs exactly one remote call using the given grant.
        """
        ledger = _AttemptLedger()

        def _call() -> Any:
            grant = self.credentials.ensure_valid()
            try:
                return operation(grant)
            except AuthExpiredError:
                ledger.refreshes += 1
                self.credentials.report_auth_failure(grant)
                raise
            except TERMINAL_REMOTE_ERRORS:
                raise
            except RemoteError:
                ledger.retries += 1
                raise
            except ReconcilerError:
                raise
            except Exception as exc:
                ledger.retries += 1
                raise RemoteCallError(str(exc) or type(exc).__name__, code=type(exc).__name__) from exc

        def _stop(retry_state: RetryCallState) -> bool:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            if isinstance(exc, AuthExpiredError):
                return ledger.refreshes > self.max_refreshes
            return ledger.retries > self.max_retries

        def _wait(retry_state: RetryCallState) -> float:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            if isinstance(exc, AuthExpiredError):
                return 0.0
            return self.base_delay * ledger.retries

        retrying = Retrying(
            retry=retry_if_exception(_is_retryable),
            stop=_stop,
            wait=_wait,
            sleep=self._sleep,
            before_sleep=before_sleep_log(log, logging.WARNING),
            reraise=True,
        )
        try:
            value = retrying(_call)
        except RemoteError as exc:
            return AttemptResult(
                error=exc,
                retry_count=min(ledger.retries, self.max_retries),
                refresh_count=ledger.refreshes,
            )
        return AttemptResult(
            value=value, retry_count=ledger.retries, refresh_count=ledger.refreshes
        )


__all__ = ["AttemptResult", "RetryController"]
