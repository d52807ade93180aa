from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Literal
from .utils import getenv_bool, getenv_int, getenv_str, getenv_csv

# ---------- Project Paths ----------
PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
DATA_DIR: Path = PROJECT_ROOT / "data"
LOG_DIR: Path = PROJECT_ROOT / "logs"
LOG_FILE: Path = LOG_DIR / "labelscan.log"

DEFAULT_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Safari/605.1.15",
)

DEFAULT_ALLOWED_DOMAINS = (
    "ebay.com,ebay.de,ebay.co.uk,ebay.fr,ebay.it,ebay.es,ebay.com.au,"
    "ebay.ca,ebay.ch,ebay.at,ebay.nl,ebay.be,ebay.ie"
)


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class Config:
    env: Literal["dev", "staging", "prod"]

    # Orchestrator
    max_concurrency: int
    pacing_delay_ms: int                        # pause between items taken by one worker
    pacing_jitter_ms: int                       # extra uniform jitter on top of pacing
    max_batch_size: int

    # Fetch client: timeout / retry
    request_timeout_ms: int                     # per-attempt ceiling
    retry_count: int                            # retries after the first attempt
    retry_base_delay_ms: int                    # linear backoff: attempt * base

    # Session manager: pacing & lifecycle
    min_request_interval_ms: int                # measured from the end of the previous render
    jitter_min_ms: int
    jitter_max_ms: int
    idle_timeout_s: int                         # tear the browser down after this much inactivity

    # Navigation
    navigation_timeout_ms: int
    navigation_wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"]
    selector_wait_ms: int                       # best-effort wait for the regulatory block
    content_settle_ms: int                      # extra wait for late widgets
    page_close_timeout_ms: int

    # Browser
    headless: bool
    block_heavy_resources: bool
    proxy_server: str | None
    browser_args_extra: tuple[str, ...]
    user_agents: tuple[str, ...]

    # Targets
    allowed_domains: tuple[str, ...]

    # Service
    server_host: str
    server_port: int
    remote_base_url: str

    # Paths / logging
    project_root: Path
    data_dir: Path
    log_file: Path
    log_level: str

    def with_overrides(self, **changes) -> "Config":
        return replace(self, **changes)


# ---------- Loader ----------
def load_config() -> Config:

    jitter_min = getenv_int("JITTER_MIN_MS", 500, 0, 60000)
    jitter_max = max(jitter_min, getenv_int("JITTER_MAX_MS", 1500, 0, 60000))

    cfg = Config(
        env=getenv_str("APP_ENV", "dev"),

        # three parallel workers; the browser itself is serialized anyway
        max_concurrency=getenv_int("MAX_CONCURRENCY", 3, 1, 32),
        pacing_delay_ms=getenv_int("PACING_DELAY_MS", 500, 0, 60000),
        pacing_jitter_ms=getenv_int("PACING_JITTER_MS", 0, 0, 60000),
        max_batch_size=getenv_int("MAX_BATCH_SIZE", 50, 1, 1000),

        # retry/backoff
        request_timeout_ms=getenv_int("REQUEST_TIMEOUT_MS", 45000, 1000, 300000),
        retry_count=getenv_int("RETRY_COUNT", 2, 0, 10),
        retry_base_delay_ms=getenv_int("RETRY_BASE_DELAY_MS", 2000, 0, 60000),

        # Marketplace pages punish bursts; keep at least 2s between renders.
        min_request_interval_ms=getenv_int("MIN_REQUEST_INTERVAL_MS", 2000, 0, 60000),
        jitter_min_ms=jitter_min,
        jitter_max_ms=jitter_max,
        idle_timeout_s=getenv_int("IDLE_TIMEOUT_S", 300, 1, 86400),

        # navigation
        navigation_timeout_ms=getenv_int("NAVIGATION_TIMEOUT_MS", 60000, 1000, 300000),
        navigation_wait_until=getenv_str("NAV_WAIT_UNTIL", "domcontentloaded"),
        selector_wait_ms=getenv_int("SELECTOR_WAIT_MS", 15000, 0, 120000),
        content_settle_ms=getenv_int("CONTENT_SETTLE_MS", 3000, 0, 60000),
        page_close_timeout_ms=getenv_int("PAGE_CLOSE_TIMEOUT_MS", 1500, 100, 10000),

        # browser
        headless=getenv_bool("HEADLESS", True),
        block_heavy_resources=getenv_bool("BLOCK_HEAVY_RESOURCES", True),
        proxy_server=getenv_str("PROXY_SERVER", "") or None,
        browser_args_extra=getenv_csv("BROWSER_ARGS_EXTRA", ""),
        user_agents=_user_agents(),

        allowed_domains=getenv_csv("ALLOWED_DOMAINS", DEFAULT_ALLOWED_DOMAINS),

        # service
        server_host=getenv_str("SERVER_HOST", "127.0.0.1"),
        server_port=getenv_int("PORT", 3000, 1, 65535),
        remote_base_url=getenv_str("ANALYZER_BASE_URL", "http://localhost:3000"),

        # paths
        project_root=PROJECT_ROOT,
        data_dir=DATA_DIR,
        log_file=LOG_FILE,
        log_level=getenv_str("LOG_LEVEL", "INFO").upper(),
    )
    return cfg


def _user_agents() -> tuple[str, ...]:
    # UA strings contain commas, so the env override is '|'-separated
    raw = getenv_str("SCRAPER_USER_AGENTS", "")
    if not raw:
        return DEFAULT_USER_AGENTS
    parts = tuple(p.strip() for p in raw.split("|") if p.strip())
    return parts or DEFAULT_USER_AGENTS
