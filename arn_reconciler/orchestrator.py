"""
Orchestrator for status-check and deletion runs.

Drives the loop: open or resume a run, pull chunks of records after the
watermark, split them into batches, fan each batch out to a thread pool, persist
the batch's outcomes in one transaction, then advance the watermark. Repeats
until the source is exhausted, the record limit is reached, or a stop is
requested.

Usage (example from CLI):
    from arn_reconciler.orchestrator import build_orchestrator

    orchestrator = build_orchestrator(settings, store, stop_event)
    summary = orchestrator.run(source, limit=10_000)
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from functools import partial
from typing import Callable, Iterable, List, Optional, Protocol

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from arn_reconciler.config import Settings
from arn_reconciler.domain.errors import ConfigurationError, PersistenceError, ResumeError
from arn_reconciler.domain.models import (
    EndpointAttributes,
    Grant,
    Outcome,
    Record,
    Run,
    RunMode,
    RunSummary,
    SourceDescriptor,
)
from arn_reconciler.engine.batching import FetchRecords, iter_chunks, split_batches
from arn_reconciler.engine.classifier import Classification, classify_deletion, classify_status
from arn_reconciler.engine.credentials import CredentialManager, utc_now
from arn_reconciler.engine.progress import RunTracker
from arn_reconciler.engine.retry import RetryController
from arn_reconciler.infrastructure.sns_client import SnsEndpointClient, build_broker, build_session
from arn_reconciler.infrastructure.store import ReconciliationStore
from arn_reconciler.utils.logging import get_logger

log = get_logger(__name__)


class EndpointService(Protocol):
    """Remote operations on a single endpoint; see SnsEndpointClient."""

    def check_status(self, arn: str, grant: Grant) -> Optional[EndpointAttributes]:
        ...

    def delete_endpoint(self, arn: str, grant: Grant) -> None:
        ...


ProcessRecord = Callable[[Record], Classification]


class ReconciliationOrchestrator:
    """
    Runs check and delete passes over an ordered record set.

    Parameters
    ----------
    store : ReconciliationStore
        Source of records and sink for outcomes.
    controller : RetryController
        Retry policy wrapped around every remote call.
    service : EndpointService
        Remote endpoint operations.
    batch_size, chunk_size : int
        Records per persisted batch, and per fetch from the store.
    max_concurrency : int
        Upper bound on worker threads; the pool holds min(batch_size, max_concurrency).
    batch_pause, chunk_pause : float
        Seconds to wait between batches and between chunks.
    persist_attempts : int
        Attempts to write one batch before the run is aborted.
    stop_event : threading.Event, optional
        Checked between batches; when set the run stops cleanly.
    """

    def __init__(
        self,
        store: ReconciliationStore,
        controller: RetryController,
        service: EndpointService,
        batch_size: int = 100,
        chunk_size: int = 5_000,
        max_concurrency: int = 50,
        batch_pause: float = 0.5,
        chunk_pause: float = 1.0,
        persist_attempts: int = 3,
        stop_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if batch_size <= 0 or chunk_size <= 0 or max_concurrency <= 0:
            raise ConfigurationError("batch_size, chunk_size and max_concurrency must be positive")
        if persist_attempts <= 0:
            raise ConfigurationError("persist_attempts must be positive")
        self.store = store
        self.controller = controller
        self.service = service
        self.batch_size = batch_size
        self.chunk_size = chunk_size
        self.max_concurrency = max_concurrency
        self.batch_pause = batch_pause
        self.chunk_pause = chunk_pause
        self.persist_attempts = persist_attempts
        self.stop_event = stop_event or threading.Event()
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------ public

    def run(
        self,
        source: SourceDescriptor,
        limit: Optional[int] = None,
        resume_run_id: Optional[str] = None,
        resume_from_id: Optional[int] = None,
    ) -> RunSummary:
        """
        Check the status of every endpoint in `source` and record one outcome each.

        `resume_run_id` continues an existing check run after its watermark;
        `resume_from_id` starts a new run after the given ordinal.
        """
        if resume_run_id and resume_from_id is not None:
            raise ConfigurationError("resume_run_id and resume_from_id are mutually exclusive")

        tracker = RunTracker(self.store, clock=self._clock)
        if resume_run_id:
            tracker.resume_run(resume_run_id, fetch_for=lambda run: self._check_fetch(run, source))
            source = tracker.run.source or source
        else:
            tracker.start_new_run(source, RunMode.CHECK, start_after=resume_from_id)

        fetch = partial(self.store.fetch_records, source)
        return self._drive(tracker, fetch, limit, self._check_one)

    def delete(
        self,
        check_run_id: Optional[str] = None,
        limit: Optional[int] = None,
        resume_run_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> RunSummary:
        """
        Delete the endpoints a check run found DISABLED.

        Deletion outcomes are recorded under a new run whose parent is the check
        run. With `dry_run` no remote call is made and every record is DRY_RUN.
        """
        if check_run_id and resume_run_id:
            raise ConfigurationError("check_run_id and resume_run_id are mutually exclusive")
        tracker = RunTracker(self.store, clock=self._clock)
        if resume_run_id:
            tracker.resume_run(resume_run_id, fetch_for=self._delete_fetch)
            check_run_id = tracker.run.parent_run_id
        else:
            if not check_run_id:
                raise ConfigurationError("a check run id is required to start a deletion run")
            parent = self.store.get_run(check_run_id)
            if parent is None:
                raise ConfigurationError(f"Check run {check_run_id} does not exist")
            if parent.mode is not RunMode.CHECK:
                raise ConfigurationError(f"Run {check_run_id} is not a check run")
            tracker.start_new_run(None, RunMode.DELETE, parent_run_id=check_run_id)

        if dry_run:
            log.warning("[DRY RUN] No endpoints will be deleted", extra={"run_id": tracker.run_id})

        fetch = partial(self.store.fetch_deletion_candidates, check_run_id)
        return self._drive(tracker, fetch, limit, partial(self._delete_one, dry_run=dry_run))

    # ------------------------------------------------------------------ record handlers

    def _check_one(self, record: Record) -> Classification:
        attempt = self.controller.attempt(lambda grant: self.service.check_status(record.arn, grant))
        return classify_status(attempt)

    def _delete_one(self, record: Record, dry_run: bool = False) -> Classification:
        if dry_run:
            return classify_deletion(None, dry_run=True)
        attempt = self.controller.attempt(
            lambda grant: self.service.delete_endpoint(record.arn, grant)
        )
        return classify_deletion(attempt)

    def _check_fetch(self, run: Run, fallback: SourceDescriptor) -> FetchRecords:
        if run.mode is not RunMode.CHECK:
            raise ResumeError(f"Run {run.run_id} is a {run.mode.value} run, not a check run")
        return partial(self.store.fetch_records, run.source or fallback)

    def _delete_fetch(self, run: Run) -> FetchRecords:
        if run.mode is not RunMode.DELETE or not run.parent_run_id:
            raise ResumeError(f"Run {run.run_id} is not a deletion run")
        return partial(self.store.fetch_deletion_candidates, run.parent_run_id)

    # ------------------------------------------------------------------ loop

    def _drive(
        self,
        tracker: RunTracker,
        fetch: FetchRecords,
        limit: Optional[int],
        process_one: ProcessRecord,
    ) -> RunSummary:
        start = time.perf_counter()
        counts: Counter = Counter()
        processed = 0
        batches = 0
        chunks = 0
        stopped = False

        tracker.activate()
        workers = min(self.batch_size, self.max_concurrency)
        log.info(
            f"[RUN ACTIVE] {tracker.run_id}",
            extra={
                "run_id": tracker.run_id,
                "watermark": tracker.watermark,
                "limit": limit,
                "batch_size": self.batch_size,
                "chunk_size": self.chunk_size,
                "workers": workers,
            },
        )

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile") as pool:
            for chunk in iter_chunks(fetch, tracker.watermark, self.chunk_size, limit):
                chunks += 1
                log.info(
                    f"[CHUNK {chunk.number}] Fetched {len(chunk.records)} records",
                    extra={"run_id": tracker.run_id, "after": tracker.watermark},
                )

                for index, batch in enumerate(split_batches(chunk.records, self.batch_size)):
                    if self.stop_event.is_set():
                        stopped = True
                        break
                    if index > 0:
                        self._sleep(self.batch_pause)

                    outcomes = self._process_batch(pool, tracker, batch, process_one)
                    self._persist(outcomes)
                    tracker.advance(outcomes)

                    batches += 1
                    processed += len(outcomes)
                    counts.update(o.kind.value for o in outcomes)

                if stopped:
                    log.warning(
                        "[RUN STOPPED] Stop requested; exiting at batch boundary",
                        extra={"run_id": tracker.run_id, "watermark": tracker.watermark},
                    )
                    break
                if chunk.exhausted:
                    tracker.mark_exhausted()
                    break
                if limit is not None and processed >= limit:
                    break
                if self.stop_event.is_set():
                    stopped = True
                    break
                self._sleep(self.chunk_pause)

        elapsed = time.perf_counter() - start
        summary = RunSummary(
            run_id=tracker.run_id,
            mode=tracker.run.mode,
            total_processed=processed,
            counts=dict(counts),
            batches=batches,
            chunks=chunks,
            final_watermark=tracker.watermark,
            state=tracker.state,
            stopped=stopped,
            elapsed_seconds=round(elapsed, 2),
        )
        log.info(
            f"[RUN COMPLETE] {tracker.run_id}",
            extra={
                "run_id": tracker.run_id,
                "processed": processed,
                "batches": batches,
                "chunks": chunks,
                "watermark": tracker.watermark,
                "state": tracker.state.value,
                "stopped": stopped,
                "counts": dict(counts),
            },
        )
        return summary

    def _process_batch(
        self,
        pool: ThreadPoolExecutor,
        tracker: RunTracker,
        batch: List[Record],
        process_one: ProcessRecord,
    ) -> List[Outcome]:
        batch_number = tracker.next_batch_number()
        started = time.perf_counter()

        futures = [pool.submit(process_one, record) for record in batch]
        classifications = [future.result() for future in futures]

        checked_at = self._clock()
        outcomes = [
            Outcome(
                run_id=tracker.run_id,
                batch_number=batch_number,
                ordinal=record.ordinal,
                arn=record.arn,
                kind=result.kind,
                reason=result.reason,
                error_message=result.error_message,
                retry_count=result.metadata.get("retry_count", 0),
                metadata=result.metadata,
                checked_at=checked_at,
            )
            for record, result in zip(batch, classifications)
        ]

        batch_counts = Counter(o.kind.value for o in outcomes)
        log.info(
            f"[BATCH COMPLETE] Batch {batch_number}",
            extra={
                "run_id": tracker.run_id,
                "batch": batch_number,
                "records": len(outcomes),
                "first_ordinal": batch[0].ordinal,
                "last_ordinal": batch[-1].ordinal,
                "counts": dict(batch_counts),
                "duration_seconds": round(time.perf_counter() - started, 3),
            },
        )
        return outcomes

    def _persist(self, outcomes: Iterable[Outcome]) -> None:
        """
        Write one batch, retrying the whole batch; inserts are idempotent.
        """
        outcomes = list(outcomes)
        retrying = Retrying(
            stop=stop_after_attempt(self.persist_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(PersistenceError),
            sleep=self._sleep,
            before_sleep=before_sleep_log(log, logging.WARNING),
            reraise=True,
        )
        retrying(self.store.append_outcomes, outcomes)


def build_orchestrator(
    settings: Settings,
    store: ReconciliationStore,
    stop_event: Optional[threading.Event] = None,
    batch_size: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> ReconciliationOrchestrator:
    """
    Wire the AWS adapters, credential manager and retry controller from settings.
    """
    session = build_session(settings)
    credentials = CredentialManager(
        build_broker(settings, session),
        safety_margin=timedelta(seconds=settings.credential_safety_margin_seconds),
    )
    controller = RetryController(
        credentials,
        max_retries=settings.max_retries,
        base_delay=settings.retry_delay_ms / 1000,
        max_refreshes=settings.max_credential_refreshes,
    )
    return ReconciliationOrchestrator(
        store=store,
        controller=controller,
        service=SnsEndpointClient(settings.aws_region, session=session),
        batch_size=batch_size or settings.batch_size,
        chunk_size=chunk_size or settings.chunk_size,
        max_concurrency=settings.max_concurrency,
        batch_pause=settings.batch_pause_ms / 1000,
        chunk_pause=settings.chunk_pause_ms / 1000,
        persist_attempts=settings.persist_attempts,
        stop_event=stop_event,
    )


__all__ = ["EndpointService", "ReconciliationOrchestrator", "build_orchestrator"]
