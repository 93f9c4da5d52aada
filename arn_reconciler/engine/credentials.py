"""
Credential lifecycle management for remote calls.

The manager owns the current grant and is the only place it changes. Callers ask
for a valid grant before every call (`ensure_valid`) and report authentication
failures back (`report_auth_failure`); the manager decides when to go to the
broker again.

States:
    UNINITIALIZED -> VALID     first successful acquisition
    VALID -> EXPIRED           expiry (minus safety margin) observed, or auth failure reported
    EXPIRED -> VALID           successful re-acquisition
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional, Protocol

from arn_reconciler.domain.errors import GrantAcquisitionError
from arn_reconciler.domain.models import Grant
from arn_reconciler.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_SAFETY_MARGIN = timedelta(minutes=5)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CredentialState(str, Enum):
    UNINITIALIZED = "UNINITIALIZED"
    VALID = "VALID"
    EXPIRED = "EXPIRED"


class GrantBroker(Protocol):
    """Obtains a fresh grant, e.g. via STS AssumeRole."""

    def acquire(self) -> Grant:
        ...


class CredentialManager:
    """
    Thread-safe holder of the current access grant.

    Workers of one batch share a single manager. Refreshes are serialized by a lock
    and stale auth-failure reports (for a grant generation that has already been
    replaced) are ignored, so a burst of failures from one expiry causes one refresh.
    """

    def __init__(
        self,
        broker: GrantBroker,
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._broker = broker
        self._safety_margin = safety_margin
        self._clock = clock or utc_now
        self._lock = threading.Lock()
        self._state = CredentialState.UNINITIALIZED
        self._grant: Optional[Grant] = None
        self._generation = 0
        self.refresh_count = 0

    @property
    def state(self) -> CredentialState:
        return self._state

    @property
    def grant(self) -> Optional[Grant]:
        return self._grant

    def _near_expiry(self, grant: Grant) -> bool:
        if grant.expires_at is None:
            return False
        return self._clock() >= grant.expires_at - self._safety_margin

    def ensure_valid(self) -> Grant:
        """
        Return a grant that is safe to use now, refreshing first if needed.
        """
        with self._lock:
            if self._state is CredentialState.VALID and self._grant is not None:
                if not self._near_expiry(self._grant):
                    return self._grant
                log.info(
                    "[CREDENTIALS EXPIRING] Grant is within the safety margin, refreshing",
                    extra={
                        "generation": self._grant.generation,
                        "expires_at": str(self._grant.expires_at),
                    },
                )
                self._state = CredentialState.EXPIRED
            return self._refresh_locked()

    def refresh(self) -> Grant:
        """
        Acquire a new grant unconditionally.

        Raises GrantAcquisitionError if the broker fails; the state is left EXPIRED
        (or UNINITIALIZED if no grant was ever obtained).
        """
        with self._lock:
            return self._refresh_locked()

    def report_auth_failure(self, grant: Grant) -> None:
        """
        Mark the current grant as expired if `grant` is still the current one.
        """
        with self._lock:
            current = self._grant
            if current is None or grant.generation != current.generation:
                return
            if self._state is CredentialState.VALID:
                log.warning(
                    "[CREDENTIALS REJECTED] Remote rejected grant, forcing refresh",
                    extra={"generation": current.generation},
                )
                self._state = CredentialState.EXPIRED

    def _refresh_locked(self) -> Grant:
        try:
            acquired = self._broker.acquire()
        except GrantAcquisitionError:
            self._mark_failed()
            raise
        except Exception as exc:
            self._mark_failed()
            raise GrantAcquisitionError(f"Failed to acquire access grant: {exc}") from exc

        self._generation += 1
        self.refresh_count += 1
        self._grant = acquired.model_copy(update={"generation": self._generation})
        self._state = CredentialState.VALID
        log.info(
            "[CREDENTIALS REFRESHED] Acquired access grant",
            extra={
                "generation": self._generation,
                "expires_at": str(self._grant.expires_at) if self._grant.expires_at else None,
            },
        )
        return self._grant

    def _mark_failed(self) -> None:
        if self._state is not CredentialState.UNINITIALIZED:
            self._state = CredentialState.EXPIRED
        log.error("[CREDENTIALS FAILED] Could not acquire access grant")


__all__ = ["CredentialManager", "CredentialState", "GrantBroker", "utc_now"]
