"""
Run identity and progress tracking.

A run is identified by a RunId minted once at start. Progress is a watermark: the
highest ordinal whose outcome has been durably written under the run. The tracker
only moves the watermark after the store has accepted a batch, and on resume it
re-derives everything from the store, so a crash at any point loses at most the
batch that was in flight.

States:
    STARTING -> ACTIVE -> EXHAUSTED
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional, Sequence

from arn_reconciler.domain.errors import ProgressError, ResumeError
from arn_reconciler.domain.models import Outcome, Run, RunMode, RunState, SourceDescriptor
from arn_reconciler.engine.batching import FetchRecords
from arn_reconciler.engine.credentials import utc_now
from arn_reconciler.utils.logging import get_logger

if TYPE_CHECKING:
    from arn_reconciler.infrastructure.store import ReconciliationStore

log = get_logger(__name__)

_RUN_ID_PATTERN = re.compile(r"^run-(?P<ts>\d{8}T\d{6}Z)-(?P<suffix>[0-9a-f]{8})$")
_RUN_ID_TS_FORMAT = "%Y%m%dT%H%M%SZ"


@dataclass(frozen=True, order=True)
class RunId:
    """
    Run identifier: `run-<UTC second>-<8 hex chars>`.

    Identifiers sort by creation time. The suffix holds 32 random bits from
    `secrets`, so two runs started in the same second collide with probability 2**-32.
    """

    value: str

    @classmethod
    def generate(cls, now: Optional[datetime] = None) -> "RunId":
        moment = (now or utc_now()).astimezone(timezone.utc)
        return cls(f"run-{moment.strftime(_RUN_ID_TS_FORMAT)}-{secrets.token_hex(4)}")

    @classmethod
    def parse(cls, raw: str) -> "RunId":
        candidate = (raw or "").strip()
        if not _RUN_ID_PATTERN.match(candidate):
            raise ValueError(f"malformed run id: {raw!r}")
        return cls(candidate)

    @property
    def started_at(self) -> datetime:
        match = _RUN_ID_PATTERN.match(self.value)
        if match is None:
            raise ValueError(f"malformed run id: {self.value!r}")
        return datetime.strptime(match.group("ts"), _RUN_ID_TS_FORMAT).replace(tzinfo=timezone.utc)

    def __str__(self) -> str:
        return self.value


class RunTracker:
    """
    Owns the run id, the batch counter, the watermark, and the run state.
    """

    def __init__(
        self,
        store: "ReconciliationStore",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._clock = clock or utc_now
        self.run: Optional[Run] = None
        self.state: Optional[RunState] = None
        self.watermark: Optional[int] = None
        self._batch_counter = 0

    @property
    def run_id(self) -> str:
        if self.run is None:
            raise ProgressError("no run has been started or resumed")
        return self.run.run_id

    @property
    def batch_counter(self) -> int:
        return self._batch_counter

    def start_new_run(
        self,
        source: Optional[SourceDescriptor],
        mode: RunMode = RunMode.CHECK,
        parent_run_id: Optional[str] = None,
        start_after: Optional[int] = None,
    ) -> Run:
        """
        Mint a fresh run and register it with the store.

        `start_after` lets a new run skip ordinals up to and including that value.
        """
        now = self._clock()
        run_id = RunId.generate(now)
        run = Run(
            run_id=str(run_id),
            mode=mode,
            started_at=now,
            source=source,
            parent_run_id=parent_run_id,
        )
        self._store.create_run(run)
        self.run = run
        self.state = RunState.STARTING
        self.watermark = start_after
        self._batch_counter = 0
        log.info(
            "[RUN START] New run registered",
            extra={"run_id": run.run_id, "mode": mode.value, "start_after": start_after},
        )
        return run

    def resume_run(self, raw_run_id: str, fetch_for: Callable[[Run], FetchRecords]) -> Optional[int]:
        """
        Recover a run from the store and return its watermark.

        Raises ResumeError if the id is malformed, the run is unknown, nothing was
        recorded under it, or it has already been fully processed. A run with no
        records left after its watermark is marked exhausted before the error.
        """
        try:
            run_id = RunId.parse(raw_run_id)
        except ValueError as exc:
            raise ResumeError(str(exc)) from exc

        run = self._store.get_run(str(run_id))
        if run is None:
            raise ResumeError(f"Run {run_id} does not exist")

        info = self._store.get_watermark(str(run_id))
        if info.outcome_count == 0 or info.max_ordinal is None:
            raise ResumeError(f"Run {run_id} has no recorded outcomes; nothing to resume")
        if run.exhausted_at is not None:
            raise ResumeError(f"Run {run_id} is already complete")
        if not fetch_for(run)(info.max_ordinal, 1):
            # Every source record already has an outcome under this run.
            self._store.mark_run_exhausted(run.run_id, self._clock())
            log.info(
                "[RUN EXHAUSTED] Nothing left after watermark, recorded on resume",
                extra={"run_id": run.run_id, "watermark": info.max_ordinal},
            )
            raise ResumeError(f"Run {run_id} is already complete; no records after {info.max_ordinal}")

        self.run = run
        self.watermark = info.max_ordinal
        self._batch_counter = info.max_batch
        self.state = RunState.ACTIVE
        log.info(
            "[RUN RESUME] Resuming run",
            extra={
                "run_id": run.run_id,
                "watermark": info.max_ordinal,
                "outcomes": info.outcome_count,
                "batches": info.max_batch,
            },
        )
        return self.watermark

    def activate(self) -> None:
        if self.state is RunState.STARTING:
            self.state = RunState.ACTIVE

    def next_batch_number(self) -> int:
        self._batch_counter += 1
        return self._batch_counter

    def advance(self, outcomes: Sequence[Outcome]) -> Optional[int]:
        """
        Move the watermark past a batch whose outcomes have been persisted.
        """
        if self.state is RunState.EXHAUSTED:
            raise ProgressError(f"run {self.run_id} is already exhausted")
        if not outcomes:
            return self.watermark
        lowest = min(o.ordinal for o in outcomes)
        highest = max(o.ordinal for o in outcomes)
        if self.watermark is not None and lowest <= self.watermark:
            raise ProgressError(
                f"batch starts at ordinal {lowest}, at or below watermark {self.watermark}"
            )
        self.watermark = highest
        return self.watermark

    def mark_exhausted(self) -> None:
        self.state = RunState.EXHAUSTED
        self._store.mark_run_exhausted(self.run_id, self._clock())
        log.info(
            "[RUN EXHAUSTED] Source fully processed",
            extra={"run_id": self.run_id, "watermark": self.watermark},
        )


__all__ = ["RunId", "RunTracker"]
