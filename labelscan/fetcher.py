from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_incrementing,
)

from .classifier import ClassificationResult, classify
from .config import Config
from .session import RenderSessionManager, get_session_manager
from .utils import (
    ERROR_MESSAGES,
    RETRYABLE_ERRORS,
    AnalyzerError,
    AttemptTimeoutError,
    ErrorKind,
    RateLimitedError,
    SessionStartupError,
    TargetValidationError,
    TransientFetchError,
    utc_now_iso,
    validate_target,
)

logger = logging.getLogger(__name__)


@dataclass
class FetchOutcome:
    target: str
    result: ClassificationResult
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    attempts: int = 0
    processing_time_ms: int = 0
    retry_after_s: Optional[float] = None
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def ok(self) -> bool:
        return self.error_kind is None and not self.result.is_error

    @property
    def code(self) -> Optional[str]:
        if self.error_code:
            return self.error_code
        return self.error_kind.name if self.error_kind is not None else None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = dict(self.result.to_dict())
        body.update({
            "url": self.target,
            "timestamp": self.timestamp,
            "processingTimeMs": self.processing_time_ms,
            "attempts": self.attempts,
        })
        if self.ok:
            body["debug"] = {
                "reasons": dict(self.result.reasons),
                "diagnostics": self.result.diagnostics,
            }
        else:
            body["error"] = self.error
            body["code"] = self.code
            if self.retry_after_s is not None:
                body["retryAfter"] = self.retry_after_s
        return body


@dataclass
class _Operation:
    """A shared in-flight fetch and its own abandon signal."""

    task: asyncio.Task
    abandon: asyncio.Event


def error_outcome(target: str, exc: AnalyzerError, *, attempts: int, started: float) -> FetchOutcome:
    message = str(exc) or ERROR_MESSAGES[exc.kind]
    return FetchOutcome(
        target=target,
        result=ClassificationResult.error_result(message),
        error_kind=exc.kind,
        error=message,
        error_code=getattr(exc, "code", None),
        attempts=attempts,
        processing_time_ms=int((time.monotonic() - started) * 1000),
        retry_after_s=getattr(exc, "retry_after_s", None),
    )


class FetchClient:
    """
    One logical "render and classify" per Target.

    Validates the target, coalesces concurrent calls for the same target onto a
    single task, and retries retryable failures with linear backoff. Every
    per-target failure comes back as a FetchOutcome; only SessionStartupError
    is raised.
    """

    def __init__(
        self,
        cfg: Config,
        session: Optional[RenderSessionManager] = None,
        *,
        classify_fn: Callable[[str], ClassificationResult] = classify,
    ):
        self.cfg = cfg
        self.session = session if session is not None else self._default_session(cfg)
        self._classify = classify_fn
        self._in_flight: Dict[str, _Operation] = {}
        self.request_count = 0
        self.attempt_count = 0
        self.coalesced_count = 0
        self.abandoned_count = 0

    def _default_session(self, cfg: Config) -> Optional[RenderSessionManager]:
        return get_session_manager(cfg)

    # ---------------------------
    # Abandon signal
    # ---------------------------

    def abandon(self) -> int:
        """
        Stop retrying the fetches that are in flight right now. Their current
        attempt runs to completion; fetches started afterwards are unaffected.
        Returns how many operations were newly abandoned.
        """
        pending = [op for op in self._in_flight.values() if not op.abandon.is_set()]
        for op in pending:
            op.abandon.set()
        if pending:
            logger.info("Abandoning further retries for %d in-flight fetches", len(pending))
        self.abandoned_count += len(pending)
        return len(pending)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    # ---------------------------
    # Public API
    # ---------------------------

    async def fetch(self, target: Any) -> FetchOutcome:
        started = time.monotonic()
        try:
            validate_target(target, self.cfg.allowed_domains)
        except TargetValidationError as e:
            logger.info("Rejected target %r: %s (%s)", target, e, e.code)
            return error_outcome("" if target is None else str(target), e, attempts=0, started=started)

        key = target.strip()
        op = self._in_flight.get(key)
        if op is None or op.abandon.is_set():
            abandon = asyncio.Event()
            task = asyncio.create_task(self._run(key, abandon), name=f"fetch:{key}")
            op = _Operation(task=task, abandon=abandon)
            self._in_flight[key] = op
            task.add_done_callback(lambda t, k=key: self._settle(k, t))
        else:
            self.coalesced_count += 1
            logger.debug("Joining in-flight fetch for %s", key)
        # one caller giving up must not cancel the shared operation
        return await asyncio.shield(op.task)

    def _settle(self, key: str, task: asyncio.Task) -> None:
        op = self._in_flight.get(key)
        if op is not None and op.task is task:
            del self._in_flight[key]
        if not task.cancelled():
            # mark retrieved; awaiting callers still receive it
            task.exception()

    def stats(self) -> Dict[str, Any]:
        return {
            "inFlight": self.in_flight,
            "requestCount": self.request_count,
            "attemptCount": self.attempt_count,
            "coalescedCount": self.coalesced_count,
            "abandonedCount": self.abandoned_count,
        }

    async def aclose(self) -> None:
        return None

    # ---------------------------
    # Retry loop
    # ---------------------------

    @staticmethod
    async def _backoff_sleep(abandon: asyncio.Event, seconds: float) -> None:
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(abandon.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run(self, target: str, abandon: asyncio.Event) -> FetchOutcome:
        started = time.monotonic()
        self.request_count += 1
        base_s = self.cfg.retry_base_delay_ms / 1000.0
        attempts = 0
        last_exc: Optional[AnalyzerError] = None

        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.cfg.retry_count + 1) | stop_when_event_set(abandon),
            wait=wait_incrementing(start=base_s, increment=base_s),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            sleep=lambda seconds: self._backoff_sleep(abandon, seconds),
            before_sleep=lambda rs: self._log_retry_for(target, rs),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if attempts > 0 and abandon.is_set() and last_exc is not None:
                        # abandoned during backoff: settle with the last failure
                        raise last_exc
                    attempts += 1
                    self.attempt_count += 1
                    try:
                        result = await self._attempt(target)
                    except AnalyzerError as e:
                        last_exc = e
                        raise
        except SessionStartupError:
            raise
        except AnalyzerError as e:
            if isinstance(e, RateLimitedError):
                logger.warning("Rate limited on %s: %s", target, e)
            else:
                logger.warning("Fetch failed for %s after %d attempt(s): %s", target, attempts, e)
            return error_outcome(target, e, attempts=attempts, started=started)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if result.is_error:
            return FetchOutcome(
                target=target,
                result=result,
                error_kind=ErrorKind.CLASSIFIER,
                error=result.error or ERROR_MESSAGES[ErrorKind.CLASSIFIER],
                attempts=attempts,
                processing_time_ms=elapsed_ms,
            )
        logger.info("Fetched %s -> %s in %dms (%d attempt(s))", target, result.summary(), elapsed_ms, attempts)
        return FetchOutcome(target=target, result=result, attempts=attempts, processing_time_ms=elapsed_ms)

    def _log_retry_for(self, target: str, rs: RetryCallState) -> None:
        exc = rs.outcome.exception() if rs.outcome else None
        delay = rs.next_action.sleep if rs.next_action else 0.0
        logger.warning("Attempt %d for %s failed (%s); retrying in %.1fs", rs.attempt_number, target, exc, delay)

    async def _attempt(self, target: str) -> ClassificationResult:
        """
        A single attempt under the per-attempt ceiling. Classifier failures
        come back inside the result and are never retried.
        """
        timeout_s = self.cfg.request_timeout_ms / 1000.0
        try:
            page = await asyncio.wait_for(self.session.render(target), timeout=timeout_s)
        except asyncio.TimeoutError as e:
            raise AttemptTimeoutError(ERROR_MESSAGES[ErrorKind.TIMEOUT]) from e
        except AnalyzerError:
            raise
        except Exception as e:
            # unexpected driver error: treat as a network blip
            raise TransientFetchError(f"{ERROR_MESSAGES[ErrorKind.TRANSIENT]}: {e}") from e
        return self._classify(page.html)
