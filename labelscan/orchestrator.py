"""
Batch scheduling over a FetchClient.

A run snapshots its batch into a FIFO queue and drains it with a fixed number
of worker tasks. Jobs live in a registry keyed by row id, so a Job that is
already Processing or Completed is never dispatched twice, even across
overlapping runs.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set

from .classifier import ClassificationResult, Verdict
from .config import Config
from .fetcher import FetchClient, FetchOutcome
from .utils import ErrorKind, SessionStartupError, utc_now_iso

logger = logging.getLogger(__name__)


class JobStatus(str, enum.Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    ERROR = "Error"


class RunState(str, enum.Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Target:
    url: str
    row_id: str

    @classmethod
    def coerce(cls, item: Any) -> "Target":
        """Accept a bare URL, a Target, or a {"url", "rowId"} mapping."""
        if isinstance(item, Target):
            return item
        if isinstance(item, dict):
            url = item.get("url") or item.get("target") or ""
            url = url if isinstance(url, str) else str(url)
            row_id = item.get("rowId", item.get("row_id"))
            return cls(url=url, row_id=str(row_id) if row_id is not None else url)
        url = "" if item is None else str(item)
        return cls(url=url, row_id=url)


@dataclass
class Job:
    target: Target
    status: JobStatus = JobStatus.PENDING
    classification: Optional[ClassificationResult] = None
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    last_analyzed: Optional[str] = None
    processing_time_ms: Optional[int] = None
    attempts: int = 0

    @property
    def row_id(self) -> str:
        return self.target.row_id

    def mark_processing(self) -> None:
        self.status = JobStatus.PROCESSING
        self.classification = None
        self.error_message = None
        self.error_kind = None
        self.last_analyzed = None

    def finish(self, outcome: FetchOutcome) -> None:
        self.last_analyzed = outcome.timestamp
        self.processing_time_ms = outcome.processing_time_ms
        self.attempts = outcome.attempts
        if outcome.ok:
            self.status = JobStatus.COMPLETED
            self.classification = outcome.result
            self.error_message = None
            self.error_kind = None
        else:
            self.fail(outcome.error or "Analysis failed", outcome.error_kind)

    def fail(self, message: str, kind: Optional[ErrorKind] = None) -> None:
        self.status = JobStatus.ERROR
        self.classification = None
        self.error_message = message
        self.error_kind = kind
        if self.last_analyzed is None:
            self.last_analyzed = utc_now_iso()

    def reset(self) -> None:
        self.status = JobStatus.PENDING
        self.classification = None
        self.error_message = None
        self.error_kind = None

    def to_dict(self) -> Dict[str, Any]:
        if self.classification is not None:
            labels = self.classification.to_dict()
        elif self.status is JobStatus.ERROR:
            labels = {"productFiche": Verdict.ERROR.value, "energyLabel": Verdict.ERROR.value,
                      "mouseoverLabel": Verdict.ERROR.value}
        else:
            labels = {"productFiche": None, "energyLabel": None, "mouseoverLabel": None}
        return {
            "rowId": self.row_id,
            "url": self.target.url,
            "status": self.status.value,
            **labels,
            "errorMessage": self.error_message,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "lastAnalyzed": self.last_analyzed,
            "processingTimeMs": self.processing_time_ms,
            "attempts": self.attempts,
        }


@dataclass
class RunSummary:
    state: RunState
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    elapsed_s: float = 0.0
    message: Optional[str] = None

    @property
    def avg_s_per_target(self) -> float:
        return round(self.elapsed_s / self.processed, 2) if self.processed else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "elapsedSeconds": round(self.elapsed_s, 2),
            "avgSecondsPerTarget": self.avg_s_per_target,
            "message": self.message,
        }


class _RunState:
    """Mutable state of one run; old workers keep theirs after a stop."""

    def __init__(self, targets: List[Target]):
        self.queue: Deque[Target] = deque(targets)
        self.total = len(targets)
        self.processed = 0
        self.succeeded = 0
        self.failed = 0
        self.skipped = 0
        self.started = time.monotonic()
        self.stop_event = asyncio.Event()
        self.stopped_summary: Optional[RunSummary] = None
        self.fatal: Optional[BaseException] = None
        self.workers: List[asyncio.Task] = []

    def record(self, job: Job) -> None:
        self.processed += 1
        if job.status is JobStatus.COMPLETED:
            self.succeeded += 1
        else:
            self.failed += 1

    def summary(self, state: RunState, message: Optional[str] = None) -> RunSummary:
        return RunSummary(
            state=state,
            total=self.total,
            processed=self.processed,
            succeeded=self.succeeded,
            failed=self.failed,
            skipped=self.skipped,
            elapsed_s=time.monotonic() - self.started,
            message=message,
        )


JobListener = Callable[[Job], None]


class JobOrchestrator:
    def __init__(self, cfg: Config, fetch_client: FetchClient, *, rng: Optional[random.Random] = None):
        self.cfg = cfg
        self.fetch_client = fetch_client
        self._rng = rng or random.Random()
        self._jobs: Dict[str, Job] = {}
        self._run: Optional[_RunState] = None
        # workers of every run, including stopped runs still finishing a fetch
        self._live_workers: Set[asyncio.Task] = set()
        self._resume = asyncio.Event()
        self._resume.set()
        self._listeners: List[JobListener] = []

    # ---------------------------
    # Introspection
    # ---------------------------

    @property
    def is_running(self) -> bool:
        return self._run is not None and not self._run.stop_event.is_set()

    @property
    def is_paused(self) -> bool:
        return not self._resume.is_set()

    def jobs(self) -> List[Job]:
        return [replace(j) for j in self._jobs.values()]

    def job(self, row_id: str) -> Optional[Job]:
        j = self._jobs.get(row_id)
        return replace(j) if j is not None else None

    def stats(self) -> Dict[str, Any]:
        run = self._run
        active = sum(1 for j in self._jobs.values() if j.status is JobStatus.PROCESSING)
        return {
            "running": self.is_running,
            "paused": self.is_paused,
            "total": run.total if run else 0,
            "processed": run.processed if run else 0,
            "succeeded": run.succeeded if run else 0,
            "failed": run.failed if run else 0,
            "skipped": run.skipped if run else 0,
            "queueDepth": len(run.queue) if run else 0,
            "activeJobs": active,
            "liveWorkers": len(self._live_workers),
            "knownJobs": len(self._jobs),
        }

    def add_listener(self, callback: JobListener) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: JobListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _emit(self, job: Job) -> None:
        snapshot = replace(job)
        for cb in list(self._listeners):
            try:
                cb(snapshot)
            except Exception as e:
                logger.warning("Job listener %r failed: %s", cb, e)

    # ---------------------------
    # Controls
    # ---------------------------

    def pause(self) -> None:
        if self.is_running and not self.is_paused:
            logger.info("Pausing analysis; in-flight jobs will finish")
        self._resume.clear()

    def resume(self) -> None:
        if self.is_paused:
            logger.info("Resuming analysis")
        self._resume.set()

    def stop(self) -> None:
        run = self._run
        if run is None or run.stop_event.is_set():
            return
        self._halt(run)
        logger.info("Analysis stopped: %d/%d processed", run.processed, run.total)

    def _halt(self, run: _RunState, message: Optional[str] = None) -> None:
        run.stopped_summary = run.summary(RunState.STOPPED, message)
        run.stop_event.set()
        drained = list(run.queue)
        run.queue.clear()
        for target in drained:
            job = self._jobs.get(target.row_id)
            if job is not None and job.status not in (JobStatus.PROCESSING, JobStatus.COMPLETED):
                job.reset()
        self.fetch_client.abandon()
        # paused workers must wake up to see the stop
        self._resume.set()

    async def shutdown(self, timeout: float) -> None:
        """Stop, give in-flight jobs up to `timeout` seconds, then cancel the rest."""
        self.stop()
        live = list(self._live_workers)
        if not live:
            return
        _, pending = await asyncio.wait(live, timeout=timeout)
        if pending:
            logger.warning("Cancelling %d workers still busy after %.1fs", len(pending), timeout)
            for w in pending:
                w.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    # ---------------------------
    # Run
    # ---------------------------

    def _register(self, targets: Iterable[Target]) -> None:
        for t in targets:
            job = self._jobs.get(t.row_id)
            if job is None or job.target.url != t.url:
                self._jobs[t.row_id] = Job(target=t)

    async def run(self, batch: Iterable[Any]) -> RunSummary:
        if self.is_running:
            logger.warning("run() called while a run is active; rejected")
            return RunSummary(state=RunState.REJECTED, message="Analysis already in progress")

        targets = [Target.coerce(item) for item in batch]
        run = _RunState(targets)
        self._run = run
        self._resume.set()

        try:
            await self._wait_for_stale_workers()
        except asyncio.CancelledError:
            if self._run is run:
                self._run = None
            raise
        if run.stop_event.is_set():
            if self._run is run:
                self._run = None
            return run.stopped_summary

        self._register(targets)
        n_workers = self.cfg.max_concurrency
        logger.info("Starting analysis of %d targets with %d workers", run.total, n_workers)
        workers = [
            asyncio.create_task(self._worker(run, i), name=f"analyzer_worker_{i}")
            for i in range(n_workers)
        ]
        run.workers = workers
        for w in workers:
            self._live_workers.add(w)
            w.add_done_callback(self._live_workers.discard)
        all_done = asyncio.gather(*workers, return_exceptions=True)
        stop_wait = asyncio.create_task(run.stop_event.wait(), name="analyzer_stop_wait")

        try:
            await asyncio.wait({all_done, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._halt(run, "cancelled")
            for w in run.workers:
                w.cancel()
            raise
        finally:
            if not stop_wait.done():
                stop_wait.cancel()
            if self._run is run:
                self._run = None

        if run.fatal is not None:
            logger.error("Analysis aborted: %s", run.fatal)
            raise run.fatal

        if run.stopped_summary is not None:
            return run.stopped_summary

        summary = run.summary(RunState.COMPLETED)
        logger.info(
            "Analysis complete: %d succeeded, %d failed, %d skipped in %.1fs (%.2fs/target)",
            summary.succeeded, summary.failed, summary.skipped, summary.elapsed_s, summary.avg_s_per_target,
        )
        return summary

    async def _wait_for_stale_workers(self) -> None:
        # a stopped run's workers may still be inside fetch(); starting new
        # ones next to them would exceed max_concurrency
        stale = list(self._live_workers)
        if not stale:
            return
        logger.info("Waiting for %d workers of the previous run to finish", len(stale))
        await asyncio.wait(stale)

    async def _pace(self, run: _RunState) -> None:
        delay_ms = self.cfg.pacing_delay_ms
        if self.cfg.pacing_jitter_ms > 0:
            delay_ms += self._rng.uniform(0, self.cfg.pacing_jitter_ms)
        if delay_ms <= 0:
            return
        try:
            await asyncio.wait_for(run.stop_event.wait(), timeout=delay_ms / 1000.0)
        except asyncio.TimeoutError:
            pass

    async def _worker(self, run: _RunState, wid: int) -> None:
        while not run.stop_event.is_set():
            if not self._resume.is_set():
                await self._resume.wait()
                continue
            if not run.queue:
                break

            target = run.queue.popleft()
            job = self._jobs[target.row_id]
            if job.status in (JobStatus.PROCESSING, JobStatus.COMPLETED):
                run.skipped += 1
                logger.debug("[w%d] skipping %s (%s)", wid, target.row_id, job.status.value)
                continue

            job.mark_processing()
            self._emit(job)
            try:
                outcome = await self.fetch_client.fetch(target.url)
            except SessionStartupError as e:
                job.fail(str(e), ErrorKind.STARTUP)
                run.record(job)
                self._emit(job)
                if run.fatal is None:
                    run.fatal = e
                    self._halt(run, str(e))
                return
            except Exception as e:
                logger.exception("[w%d] unexpected failure on %s", wid, target.url)
                job.fail(f"Unexpected error: {e}")
            else:
                job.finish(outcome)

            run.record(job)
            self._emit(job)
            logger.info(
                "[w%d] %s -> %s (%d/%d)",
                wid, target.url, job.status.value, run.processed, run.total,
            )

            if run.queue and not run.stop_event.is_set():
                await self._pace(run)
