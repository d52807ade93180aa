from __future__ import annotations

import asyncio
import enum
import logging
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Page,
    Playwright,
    Error as PWError,
    TimeoutError as PWTimeoutError,
)

from .classifier import REGULATORY_WRAPPER
from .config import Config
from .utils import (
    ERROR_MESSAGES,
    ErrorKind,
    RateLimitedError,
    SessionStartupError,
    SessionUnavailableError,
    TransientFetchError,
    http_status_to_exc,
    is_closed_error,
    looks_antibot,
    try_close,
)

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class RenderedPage:
    url: str
    final_url: str
    status: Optional[int]
    html: str
    render_ms: int


_BLOCKED_RESOURCE_TYPES = {"image", "media", "font"}
_BLOCKED_HOST_HINTS = ("google-analytics", "doubleclick", "googletagmanager")


def _browser_args(cfg: Config) -> list[str]:
    args: list[str] = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",
        # keep renderer light
        "--disable-extensions",
        "--disable-background-timer-throttling",
        "--disable-backgrounding-occluded-windows",
        "--disable-renderer-backgrounding",
        "--disable-features=TranslateUI",
        "--disable-ipc-flooding-protection",
        "--no-first-run",
        "--no-default-browser-check",
        # stealth
        "--disable-blink-features=AutomationControlled",
    ]
    for a in cfg.browser_args_extra or ():
        if isinstance(a, str) and a.strip():
            args.append(a.strip())
    return args


async def _install_request_blocking(context: BrowserContext) -> None:
    async def route_handler(route, request):
        if request.resource_type in _BLOCKED_RESOURCE_TYPES:
            return await route.abort()
        if any(h in request.url for h in _BLOCKED_HOST_HINTS):
            return await route.abort()
        return await route.continue_()
    await context.route("**/*", route_handler)


class RenderSessionManager:
    """
    Owner of the single Chromium instance used for rendering.

    The browser is launched lazily on first use, every render gets its own
    browser context that is closed afterwards, renders are serialized and
    spaced out, and the whole browser is torn down after `idle_timeout_s`
    without activity. Callers never see the raw browser handle.
    """

    def __init__(self, cfg: Config, *, rng: Optional[random.Random] = None):
        self.cfg = cfg
        self._rng = rng or random.Random()
        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._state = SessionState.UNINITIALIZED
        self._needs_restart = False
        self._startup_failed = False
        self._init_lock = asyncio.Lock()
        self._render_lock = asyncio.Lock()
        self._held: Set[BrowserContext] = set()
        self._idle_task: Optional[asyncio.Task] = None
        self._last_request_end: Optional[float] = None
        self._last_activity: Optional[float] = None
        self.request_count = 0
        self.launch_count = 0
        self.last_error: Optional[str] = None

    # ---------------------------
    # Lifecycle
    # ---------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def active_contexts(self) -> int:
        return len(self._held)

    def is_connected(self) -> bool:
        b = self._browser
        if b is None:
            return False
        try:
            return bool(b.is_connected())
        except Exception:
            return False

    def _usable(self) -> bool:
        return self._state is SessionState.READY and not self._needs_restart and self.is_connected()

    async def ensure_ready(self) -> Browser:
        if self._usable():
            return self._browser  # type: ignore[return-value]

        async with self._init_lock:
            # a concurrent caller may have finished the launch while we waited
            if self._usable():
                return self._browser  # type: ignore[return-value]

            if self._browser is not None or self._pw is not None:
                logger.warning("Rendering browser unusable (state=%s); restarting", self._state.value)
                await self._teardown()

            self._state = SessionState.STARTING
            try:
                self._pw = await async_playwright().start()
                proxy = {"server": self.cfg.proxy_server} if self.cfg.proxy_server else None
                self._browser = await self._pw.chromium.launch(
                    headless=self.cfg.headless,
                    args=_browser_args(self.cfg),
                    proxy=proxy,
                    handle_sigint=False,
                    handle_sigterm=False,
                    handle_sighup=False,
                )
            except Exception as e:
                self.last_error = str(e)
                self._startup_failed = True
                logger.error("Failed to launch rendering browser: %s", e)
                await self._teardown()
                self._state = SessionState.CLOSED if self.launch_count else SessionState.UNINITIALIZED
                raise SessionStartupError(f"{ERROR_MESSAGES[ErrorKind.STARTUP]}: {e}") from e

            self._browser.on("disconnected", self._on_disconnected)
            self._state = SessionState.READY
            self._needs_restart = False
            self._startup_failed = False
            self.launch_count += 1
            self._reset_idle_timer()
            logger.info(
                "Rendering browser started headless=%s proxy=%s launch#%d",
                self.cfg.headless, bool(self.cfg.proxy_server), self.launch_count,
            )
            return self._browser

    def _on_disconnected(self, *_args: Any) -> None:
        logger.warning("Rendering browser disconnected")
        self._needs_restart = True

    async def close(self, reason: str = "explicit") -> None:
        async with self._init_lock:
            if self._browser is None and self._pw is None:
                self._cancel_idle_timer()
                return
            logger.info("Closing rendering browser (%s); force-releasing %d contexts", reason, len(self._held))
            await self._teardown()
            self._state = SessionState.CLOSED

    async def _teardown(self) -> None:
        self._cancel_idle_timer()
        for ctx in list(self._held):
            await try_close(ctx, self.cfg.page_close_timeout_ms)
        self._held.clear()

        browser, pw = self._browser, self._pw
        self._browser, self._pw = None, None
        if browser is not None:
            try:
                await browser.close()
            except Exception as e:
                logger.debug("Error while closing browser: %s", e)
        if pw is not None:
            try:
                await pw.stop()
            except Exception as e:
                logger.debug("Error while stopping Playwright: %s", e)
        self._needs_restart = False

    # ---------------------------
    # Idle teardown
    # ---------------------------

    def _cancel_idle_timer(self) -> None:
        t = self._idle_task
        self._idle_task = None
        if t is not None and not t.done() and t is not asyncio.current_task():
            t.cancel()

    def _reset_idle_timer(self) -> None:
        self._last_activity = time.monotonic()
        self._cancel_idle_timer()
        self._idle_task = asyncio.create_task(self._idle_watch(), name="session_idle_teardown")

    async def _idle_watch(self) -> None:
        await asyncio.sleep(self.cfg.idle_timeout_s)
        if self._idle_task is not asyncio.current_task():
            return
        # detached: a reset from here on schedules a new timer instead of cancelling this one
        self._idle_task = None
        async with self._init_lock:
            if self._render_lock.locked() or self._held:
                # a render outlived the timeout; check again later
                if self._idle_task is None:
                    self._idle_task = asyncio.create_task(self._idle_watch(), name="session_idle_teardown")
                return
            since = time.monotonic() - (self._last_activity or 0.0)
            if since < self.cfg.idle_timeout_s / 2:
                return
            if self._browser is None and self._pw is None:
                return
            logger.info("Rendering browser idle for %ss; releasing it", self.cfg.idle_timeout_s)
            await self._teardown()
            self._state = SessionState.CLOSED

    # ---------------------------
    # Rendering
    # ---------------------------

    async def _respect_rate_limit(self) -> None:
        if self._last_request_end is not None:
            since = time.monotonic() - self._last_request_end
            wait_s = self.cfg.min_request_interval_ms / 1000.0 - since
            if wait_s > 0:
                logger.debug("Rate limiting: waiting %.0fms", wait_s * 1000)
                await asyncio.sleep(wait_s)
        jitter_ms = self._rng.uniform(self.cfg.jitter_min_ms, self.cfg.jitter_max_ms)
        if jitter_ms > 0:
            await asyncio.sleep(jitter_ms / 1000.0)

    def _unavailable(self, msg: str, exc: BaseException) -> SessionUnavailableError:
        self._needs_restart = True
        self.last_error = msg
        return SessionUnavailableError(f"{ERROR_MESSAGES[ErrorKind.RESOURCE_UNAVAILABLE]}: {exc}")

    @asynccontextmanager
    async def acquire_page(self, target: str):
        """
        Isolated browser context + page for exactly one render; always closed
        on exit, whatever happened inside.
        """
        browser = await self.ensure_ready()
        context: Optional[BrowserContext] = None
        try:
            try:
                context = await browser.new_context(
                    user_agent=self._rng.choice(self.cfg.user_agents),
                    viewport={"width": 1920, "height": 1080},
                    java_script_enabled=True,
                    extra_http_headers={
                        "Accept-Language": "de-DE,de;q=0.9,en-US;q=0.8,en;q=0.7",
                        "Upgrade-Insecure-Requests": "1",
                    },
                )
                self._held.add(context)
                context.set_default_timeout(self.cfg.navigation_timeout_ms)
                context.set_default_navigation_timeout(self.cfg.navigation_timeout_ms)
                if self.cfg.block_heavy_resources:
                    await _install_request_blocking(context)
                page: Page = await context.new_page()
            except Exception as e:
                if is_closed_error(e) or not self.is_connected():
                    raise self._unavailable("context creation failed", e) from e
                raise TransientFetchError(f"Could not open page for {target}: {e}") from e

            self._reset_idle_timer()
            yield page
        finally:
            if context is not None:
                self._held.discard(context)
                await try_close(context, self.cfg.page_close_timeout_ms)

    async def _navigate_and_extract(self, page: Page, url: str) -> tuple[Optional[int], str, str]:
        cfg = self.cfg
        try:
            resp = await page.goto(url, wait_until=cfg.navigation_wait_until, timeout=cfg.navigation_timeout_ms)
        except PWTimeoutError as e:
            raise TransientFetchError(f"Navigation timeout: {e}") from e
        except PWError as e:
            if is_closed_error(e) or not self.is_connected():
                raise self._unavailable("navigation on closed target", e) from e
            raise TransientFetchError(f"Navigation failed: {e}") from e

        status = resp.status if resp is not None else None
        exc = http_status_to_exc(status, getattr(resp, "headers", None))
        if exc is not None:
            raise exc

        if cfg.selector_wait_ms > 0:
            try:
                await page.wait_for_selector(REGULATORY_WRAPPER, timeout=cfg.selector_wait_ms)
            except PWTimeoutError:
                # no regulatory block on this page; classification will say N
                logger.debug("Regulatory wrapper not present on %s", url)
            except PWError as e:
                if is_closed_error(e):
                    raise self._unavailable("page closed while waiting", e) from e
                logger.debug("wait_for_selector failed on %s: %s", url, e)

        if cfg.content_settle_ms > 0:
            await asyncio.sleep(cfg.content_settle_ms / 1000.0)

        try:
            html = await page.content()
        except PWError as e:
            if is_closed_error(e) or not self.is_connected():
                raise self._unavailable("content() on closed target", e) from e
            raise TransientFetchError(f"Could not read page content: {e}") from e

        if looks_antibot(html):
            logger.warning("Anti-bot interstitial served for %s", url)
            raise RateLimitedError("Anti-bot interstitial served")

        return status, html, getattr(page, "url", url) or url

    async def render(self, url: str) -> RenderedPage:
        """
        One render-and-extract cycle. Raises AnalyzerError subclasses; never
        retries on its own.
        """
        async with self._render_lock:
            await self._respect_rate_limit()
            started = time.monotonic()
            try:
                async with self.acquire_page(url) as page:
                    status, html, final_url = await self._navigate_and_extract(page, url)
            finally:
                self._last_request_end = time.monotonic()
                self.request_count += 1
            self._reset_idle_timer()

        render_ms = int((time.monotonic() - started) * 1000)
        logger.info("Rendered %s status=%s size=%dKB in %dms", url, status, len(html) // 1024, render_ms)
        return RenderedPage(url=url, final_url=final_url, status=status, html=html, render_ms=render_ms)

    # ---------------------------
    # Introspection
    # ---------------------------

    def health(self) -> Dict[str, Any]:
        if self._startup_failed or (self._browser is not None and not self.is_connected()):
            status = "unhealthy"
        elif self._usable():
            status = "healthy"
        else:
            # not started yet or released after idle: starts on demand
            status = "degraded"
        return {
            "status": status,
            "state": self._state.value,
            "activeContexts": self.active_contexts,
            "requestCount": self.request_count,
            "lastError": self.last_error,
        }

    def stats(self) -> Dict[str, Any]:
        idle_for = None
        if self._last_activity is not None:
            idle_for = round(time.monotonic() - self._last_activity, 1)
        return {
            "isInitialized": self._state is SessionState.READY,
            "browserConnected": self.is_connected(),
            "activeContexts": self.active_contexts,
            "requestCount": self.request_count,
            "launchCount": self.launch_count,
            "idleSeconds": idle_for,
        }


# Global singleton: one rendering browser per process
_GLOBAL_MANAGER: Optional[RenderSessionManager] = None

def get_session_manager(cfg: Optional[Config] = None) -> RenderSessionManager:
    global _GLOBAL_MANAGER
    if _GLOBAL_MANAGER is None:
        if cfg is None:
            from .config import load_config
            cfg = load_config()
        _GLOBAL_MANAGER = RenderSessionManager(cfg)
    return _GLOBAL_MANAGER

async def shutdown_session_manager() -> None:
    global _GLOBAL_MANAGER
    mgr, _GLOBAL_MANAGER = _GLOBAL_MANAGER, None
    if mgr is not None:
        await mgr.close(reason="shutdown")
