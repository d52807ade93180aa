from __future__ import annotations

import asyncio
import enum
import logging
import os
import re
import time
from contextlib import suppress
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Iterable, Optional, Tuple
from urllib.parse import urlparse

import tldextract

logger = logging.getLogger(__name__)

# ========== Environment & Logging helpers ==========

def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default

def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val


def getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


# parse CSV-ish envs into tuples (trim blanks)
def getenv_csv(name: str, default_csv: str) -> Tuple[str, ...]:
    raw = getenv_str(name, default_csv)
    parts = [x.strip() for x in raw.split(",")]
    return tuple(p for p in parts if p)


def init_logging(log_path: Path, level: int = logging.INFO) -> None:
    """
    Simple file+console logger. Call once early (e.g., in cli.main) with cfg.log_file.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    fmt = "%(levelname)s %(asctime)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    handlers = [
        logging.FileHandler(log_path, encoding="utf-8"),
        logging.StreamHandler()
    ]
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt, handlers=handlers)

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ========== Error taxonomy ==========

class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    RESOURCE_UNAVAILABLE = "resource_unavailable"
    RATE_LIMITED = "rate_limited"
    NOT_SUPPORTED = "not_supported"
    CLASSIFIER = "classifier"
    STARTUP = "startup"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = frozenset({ErrorKind.TRANSIENT, ErrorKind.TIMEOUT, ErrorKind.RESOURCE_UNAVAILABLE})

# User-facing messages, one per kind
ERROR_MESSAGES = {
    ErrorKind.VALIDATION: "Invalid marketplace URL format",
    ErrorKind.TRANSIENT: "Network connection failed",
    ErrorKind.TIMEOUT: "Request timeout - page took too long to load",
    ErrorKind.RESOURCE_UNAVAILABLE: "Rendering browser unavailable",
    ErrorKind.RATE_LIMITED: "Rate limit exceeded - please wait",
    ErrorKind.NOT_SUPPORTED: "Target is not a supported product page",
    ErrorKind.CLASSIFIER: "Failed to parse page content",
    ErrorKind.STARTUP: "Browser automation error",
}


class AnalyzerError(Exception):
    """Base class; every subclass names the ErrorKind it maps to."""
    kind: ErrorKind = ErrorKind.TRANSIENT

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

class TargetValidationError(AnalyzerError):
    """Malformed or unsupported target; never retried."""
    kind = ErrorKind.VALIDATION

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code

class TransientFetchError(AnalyzerError):
    """Retryable navigation/network error (5xx, resets, nav timeouts)."""
    kind = ErrorKind.TRANSIENT

class AttemptTimeoutError(AnalyzerError):
    kind = ErrorKind.TIMEOUT

class SessionUnavailableError(AnalyzerError):
    """The rendering browser went away mid-operation."""
    kind = ErrorKind.RESOURCE_UNAVAILABLE

class RateLimitedError(AnalyzerError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, retry_after_s: Optional[float] = None):
        super().__init__(message)
        self.retry_after_s = retry_after_s

class UnsupportedTargetError(AnalyzerError):
    kind = ErrorKind.NOT_SUPPORTED

class ClassifierError(AnalyzerError):
    kind = ErrorKind.CLASSIFIER

class SessionStartupError(AnalyzerError):
    """Browser could not be launched at all; the pipeline cannot continue."""
    kind = ErrorKind.STARTUP

RETRYABLE_ERRORS = (TransientFetchError, AttemptTimeoutError, SessionUnavailableError)

def http_status_to_exc(status: Optional[int], headers: Any = None) -> Optional[AnalyzerError]:
    if status is None or status < 400:
        return None
    if status == 429:
        return RateLimitedError(f"HTTP {status}", parse_retry_after_header(headers))
    if status in (404, 410):
        return UnsupportedTargetError(f"HTTP {status}")
    return TransientFetchError(f"HTTP {status}")


# ========== Target validation ==========

MISSING_TARGET = "MISSING_TARGET"
INVALID_FORMAT = "INVALID_FORMAT"
NOT_SUPPORTED_DOMAIN = "NOT_SUPPORTED_DOMAIN"

MIN_URL_LENGTH = 10
MAX_URL_LENGTH = 2048

# bundled public-suffix snapshot only; validation must not hit the network
_TLD = tldextract.TLDExtract(suffix_list_urls=())

def get_base_domain(host: str) -> str:
    """
    Return registrable domain (eTLD+1); fall back to host if unknown.
    """
    if not host:
        return "unknown-host"
    host = host.strip().lower()
    if host.startswith("www."):
        host = host[4:]
    ext = _TLD(host)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return host

def is_http_url(url: str) -> bool:
    s = urlparse(url).scheme.lower()
    return s in {"http", "https"}

def validate_target(target: Any, allowed_domains: Iterable[str]) -> None:
    """
    Raise TargetValidationError unless `target` is an http(s) URL on one of
    the allowed marketplace domains (bare or www. host only).
    """
    if target is None or (isinstance(target, str) and not target.strip()):
        raise TargetValidationError(MISSING_TARGET, "Target URL is required")
    if not isinstance(target, str):
        raise TargetValidationError(INVALID_FORMAT, ERROR_MESSAGES[ErrorKind.VALIDATION])
    url = target.strip()
    if len(url) < MIN_URL_LENGTH or len(url) > MAX_URL_LENGTH or any(c.isspace() for c in url):
        raise TargetValidationError(INVALID_FORMAT, ERROR_MESSAGES[ErrorKind.VALIDATION])
    try:
        parsed = urlparse(url)
        host = (parsed.hostname or "").lower()
    except ValueError:
        raise TargetValidationError(INVALID_FORMAT, ERROR_MESSAGES[ErrorKind.VALIDATION]) from None
    if not is_http_url(url) or not host:
        raise TargetValidationError(INVALID_FORMAT, ERROR_MESSAGES[ErrorKind.VALIDATION])

    allowed = {d.strip().lower() for d in allowed_domains if d and d.strip()}
    base = get_base_domain(host)
    sub = host[: -len(base)].rstrip(".") if host.endswith(base) else host
    if base not in allowed or sub not in ("", "www"):
        raise TargetValidationError(NOT_SUPPORTED_DOMAIN, f"Domain not supported: {host}")


# ========== Response helpers ==========

def parse_retry_after_header(headers: dict[str, str] | Any) -> Optional[float]:
    """
    Parse Retry-After header. Supports:
      - integer seconds
      - HTTP-date
    Returns seconds (float) or None.
    """
    if not headers:
        return None
    try:
        # normalize lookup
        ra = None
        for k, v in headers.items():
            if k.lower() == "retry-after":
                ra = v
                break
        if not ra:
            return None
        ra = ra.strip()
        if not ra:
            return None
        # numeric seconds?
        if ra.isdigit():
            return float(int(ra))
        # HTTP-date
        dt = parsedate_to_datetime(ra)
        if not dt:
            return None
        delta = (dt.timestamp() - time.time())
        return float(max(0.0, delta))
    except (TypeError, ValueError, AttributeError):
        return None

_ANTIBOT_PAT = re.compile(
    r"(just\s+a\s+moment\s*\.\.\.|verifying you are human|review the security of your connection|"
    r"checking your browser before accessing|are you a robot|pardon our interruption|"
    r"bitte bestätigen sie, dass sie kein roboter sind)",
    re.I,
)

def looks_antibot(html: str) -> bool:
    """Only the first 20kB are checked; interstitials are small pages."""
    if not html:
        return False
    return bool(_ANTIBOT_PAT.search(html[:20_000]))


# ========== Playwright helpers ==========

_CLOSED_PATTERNS = (
    "Target closed",
    "Target page, context or browser has been closed",
    "Browser has been closed",
    "Connection closed",
    "browser has disconnected",
    "Context is closed",
)

def is_closed_error(exc: BaseException) -> bool:
    msg = str(exc)
    return type(exc).__name__ == "TargetClosedError" or any(p in msg for p in _CLOSED_PATTERNS)

async def try_close(obj, timeout_ms: int = 1500) -> None:
    """
    Best-effort, bounded-time close of a page/context so a wedged renderer
    never blocks the caller.
    """
    if obj is None:
        return
    try:
        await asyncio.wait_for(obj.close(), timeout=max(0.1, (timeout_ms or 1) / 1000.0))
    except Exception as e:
        # already gone or recycling
        logger.debug("close() ignored: %s", e)

async def await_cancelled(task: Optional[asyncio.Task], *, timeout: float = 1.0) -> None:
    """
    Cancel an asyncio task and await its completion to avoid the
    'Future exception was never retrieved' warning.
    """
    if task is None:
        return
    if task.done():
        with suppress(asyncio.CancelledError, Exception):
            _ = task.result()
        return
    task.cancel()
    with suppress(asyncio.CancelledError, asyncio.TimeoutError, Exception):
        await asyncio.wait_for(task, timeout=timeout)
