import asyncio
import time

import pytest
from playwright.async_api import Error as PWError, TimeoutError as PWTimeoutError

import labelscan.session as session_mod
from labelscan.config import load_config
from labelscan.session import RenderSessionManager, SessionState
from labelscan.utils import (
    RateLimitedError,
    SessionStartupError,
    SessionUnavailableError,
    TransientFetchError,
    UnsupportedTargetError,
)

URL = "https://www.ebay.de/itm/1234567890"
HTML = "<html><body><div class='x-regulatory-wrapper'></div></body></html>"


def _cfg(**overrides):
    base = dict(
        min_request_interval_ms=0,
        jitter_min_ms=0,
        jitter_max_ms=0,
        selector_wait_ms=0,
        content_settle_ms=0,
        idle_timeout_s=60,
        proxy_server=None,
        block_heavy_resources=True,
    )
    base.update(overrides)
    return load_config().with_overrides(**base)


class StubResponse:
    def __init__(self, status=200, headers=None):
        self.status = status
        self.headers = headers or {}


class StubPage:
    def __init__(self, context, behavior):
        self.context = context
        self.behavior = behavior
        self.url = "about:blank"

    async def goto(self, url, wait_until=None, timeout=None):
        self.behavior.goto_calls.append((url, wait_until, time.monotonic()))
        self.behavior.active += 1
        self.behavior.max_active = max(self.behavior.max_active, self.behavior.active)
        try:
            if self.behavior.goto_gate is not None:
                await self.behavior.goto_gate.wait()
            if self.behavior.goto_delay:
                await asyncio.sleep(self.behavior.goto_delay)
            if self.behavior.goto_raises is not None:
                raise self.behavior.goto_raises
            self.url = url
            return StubResponse(self.behavior.status, self.behavior.headers)
        finally:
            self.behavior.active -= 1

    async def wait_for_selector(self, selector, timeout=None):
        raise PWTimeoutError("Timeout waiting for selector")

    async def content(self):
        if self.context.closed:
            raise PWError("Target page, context or browser has been closed")
        return self.behavior.html


class StubContext:
    def __init__(self, behavior):
        self.behavior = behavior
        self.closed = False
        self._routes = []
        self._default_timeout = None
        self._default_navigation_timeout = None
        self.kwargs = {}

    async def route(self, pattern, handler):
        self._routes.append((pattern, handler))

    def set_default_timeout(self, ms):
        self._default_timeout = ms

    def set_default_navigation_timeout(self, ms):
        self._default_navigation_timeout = ms

    async def new_page(self):
        return StubPage(self, self.behavior)

    async def close(self):
        self.closed = True


class Behavior:
    """Knobs shared by every page created from one browser."""

    def __init__(self):
        self.status = 200
        self.headers = {}
        self.html = HTML
        self.goto_raises = None
        self.goto_delay = 0.0
        self.goto_gate = None
        self.goto_calls = []
        self.active = 0
        self.max_active = 0


class StubBrowser:
    def __init__(self, behavior):
        self.behavior = behavior
        self.contexts = []
        self.closed = False
        self.connected = True
        self._events = {}

    def on(self, event, callback):
        self._events.setdefault(event, []).append(callback)

    def emit(self, event):
        for cb in list(self._events.get(event, [])):
            cb(self)

    def is_connected(self):
        return self.connected and not self.closed

    async def new_context(self, **kwargs):
        ctx = StubContext(self.behavior)
        ctx.kwargs = kwargs
        self.contexts.append(ctx)
        return ctx

    async def close(self):
        self.closed = True


class StubChromium:
    def __init__(self, behavior):
        self.behavior = behavior
        self.launches = []
        self.browsers = []
        self.launch_raises = None

    async def launch(self, **kwargs):
        self.launches.append(kwargs)
        await asyncio.sleep(0)
        if self.launch_raises is not None:
            raise self.launch_raises
        b = StubBrowser(self.behavior)
        self.browsers.append(b)
        return b


class StubPlaywright:
    def __init__(self, chromium):
        self.chromium = chromium
        self.stopped = False

    async def stop(self):
        self.stopped = True


class AsyncPlaywrightFactory:
    def __init__(self, chromium):
        self.chromium = chromium
        self.started = []

    async def start(self):
        pw = StubPlaywright(self.chromium)
        self.started.append(pw)
        return pw


@pytest.fixture
def stubs(monkeypatch):
    behavior = Behavior()
    chromium = StubChromium(behavior)
    factory = AsyncPlaywrightFactory(chromium)
    monkeypatch.setattr(session_mod, "async_playwright", lambda: factory)
    return behavior, chromium, factory


@pytest.mark.asyncio
async def test_render_returns_markup_and_releases_context(stubs):
    behavior, chromium, factory = stubs
    mgr = RenderSessionManager(_cfg())

    page = await mgr.render(URL)

    assert page.html == HTML
    assert page.status == 200
    assert page.final_url == URL
    assert mgr.state is SessionState.READY
    assert mgr.request_count == 1
    assert mgr.active_contexts == 0

    browser = chromium.browsers[0]
    ctx = browser.contexts[0]
    assert ctx.closed is True
    assert ctx.kwargs["user_agent"] in mgr.cfg.user_agents
    assert ctx._default_navigation_timeout == mgr.cfg.navigation_timeout_ms
    # request blocking installed
    pattern, handler = ctx._routes[0]
    assert pattern == "**/*" and callable(handler)

    launch = chromium.launches[0]
    assert launch["headless"] is True
    assert launch["proxy"] is None
    assert "--disable-blink-features=AutomationControlled" in launch["args"]

    assert behavior.goto_calls[0][1] == "domcontentloaded"
    assert mgr.health()["status"] == "healthy"
    await mgr.close()
    assert browser.closed is True
    assert factory.started[0].stopped is True


@pytest.mark.asyncio
async def test_no_blocking_and_proxy_passthrough(stubs):
    _, chromium, _ = stubs
    mgr = RenderSessionManager(_cfg(block_heavy_resources=False, proxy_server="http://localhost:8888"))
    await mgr.render(URL)

    assert chromium.launches[0]["proxy"] == {"server": "http://localhost:8888"}
    assert chromium.browsers[0].contexts[0]._routes == []
    await mgr.close()


@pytest.mark.asyncio
async def test_concurrent_ensure_ready_launches_once(stubs):
    _, chromium, factory = stubs
    mgr = RenderSessionManager(_cfg())

    results = await asyncio.gather(*(mgr.ensure_ready() for _ in range(5)))

    assert len(chromium.launches) == 1
    assert len(factory.started) == 1
    assert all(r is results[0] for r in results)
    await mgr.close()


@pytest.mark.asyncio
async def test_launch_failure_raises_startup_error_and_can_retry(stubs):
    _, chromium, factory = stubs
    chromium.launch_raises = RuntimeError("Executable doesn't exist")
    mgr = RenderSessionManager(_cfg())

    with pytest.raises(SessionStartupError):
        await mgr.render(URL)
    assert mgr.state is SessionState.UNINITIALIZED
    assert mgr.health()["status"] == "unhealthy"
    assert factory.started[0].stopped is True

    chromium.launch_raises = None
    page = await mgr.render(URL)
    assert page.html == HTML
    assert mgr.health()["status"] == "healthy"
    await mgr.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("status, exc_type", [
    (429, RateLimitedError),
    (404, UnsupportedTargetError),
    (410, UnsupportedTargetError),
    (503, TransientFetchError),
])
async def test_http_status_classification(stubs, status, exc_type):
    behavior, chromium, _ = stubs
    behavior.status = status
    behavior.headers = {"retry-after": "30"} if status == 429 else {}
    mgr = RenderSessionManager(_cfg())

    with pytest.raises(exc_type) as ei:
        await mgr.render(URL)
    if status == 429:
        assert ei.value.retry_after_s == 30.0
    # context released on failure too
    assert chromium.browsers[0].contexts[0].closed is True
    assert mgr.active_contexts == 0
    await mgr.close()


@pytest.mark.asyncio
async def test_navigation_timeout_is_transient(stubs):
    behavior, _, _ = stubs
    behavior.goto_raises = PWTimeoutError("Timeout 60000ms exceeded")
    mgr = RenderSessionManager(_cfg())

    with pytest.raises(TransientFetchError):
        await mgr.render(URL)
    await mgr.close()


@pytest.mark.asyncio
async def test_antibot_interstitial_is_rate_limited(stubs):
    behavior, _, _ = stubs
    behavior.html = "<html><title>Pardon Our Interruption...</title></html>"
    mgr = RenderSessionManager(_cfg())

    with pytest.raises(RateLimitedError):
        await mgr.render(URL)
    await mgr.close()


@pytest.mark.asyncio
async def test_closed_target_marks_session_dead_and_next_render_relaunches(stubs):
    behavior, chromium, _ = stubs
    behavior.goto_raises = PWError("Target page, context or browser has been closed")
    mgr = RenderSessionManager(_cfg())

    with pytest.raises(SessionUnavailableError):
        await mgr.render(URL)

    behavior.goto_raises = None
    page = await mgr.render(URL)
    assert page.html == HTML
    assert len(chromium.launches) == 2
    assert chromium.browsers[0].closed is True
    await mgr.close()


@pytest.mark.asyncio
async def test_disconnect_event_forces_fresh_browser(stubs):
    _, chromium, _ = stubs
    mgr = RenderSessionManager(_cfg())
    await mgr.render(URL)

    first = chromium.browsers[0]
    first.connected = False
    first.emit("disconnected")
    assert mgr.health()["status"] == "unhealthy"

    await mgr.render(URL)
    assert len(chromium.browsers) == 2
    assert mgr.health()["status"] == "healthy"
    await mgr.close()


@pytest.mark.asyncio
async def test_renders_are_serialized(stubs):
    behavior, _, _ = stubs
    behavior.goto_delay = 0.02
    mgr = RenderSessionManager(_cfg())

    await asyncio.gather(*(mgr.render(f"{URL}{i}") for i in range(4)))

    assert behavior.max_active == 1
    assert mgr.request_count == 4
    await mgr.close()


@pytest.mark.asyncio
async def test_min_interval_measured_from_previous_request_end(stubs):
    behavior, _, _ = stubs
    mgr = RenderSessionManager(_cfg(min_request_interval_ms=150))

    await mgr.render(URL)
    first_end = time.monotonic()
    await mgr.render(URL)

    second_goto = behavior.goto_calls[1][2]
    assert second_goto - first_end >= 0.14
    await mgr.close()


@pytest.mark.asyncio
async def test_idle_teardown_then_transparent_reinit(stubs):
    _, chromium, factory = stubs
    mgr = RenderSessionManager(_cfg(idle_timeout_s=0.05))

    await mgr.render(URL)
    assert mgr.state is SessionState.READY

    await asyncio.sleep(0.2)
    assert mgr.state is SessionState.CLOSED
    assert chromium.browsers[0].closed is True
    assert factory.started[0].stopped is True
    assert mgr.health()["status"] == "degraded"

    page = await mgr.render(URL)
    assert page.html == HTML
    assert mgr.state is SessionState.READY
    assert mgr.launch_count == 2
    await mgr.close()


@pytest.mark.asyncio
async def test_single_idle_timer_per_manager(stubs):
    mgr = RenderSessionManager(_cfg(idle_timeout_s=60))
    await mgr.render(URL)
    first_timer = mgr._idle_task
    await mgr.render(URL)

    await asyncio.sleep(0.01)
    assert first_timer.cancelled()
    pending = [t for t in asyncio.all_tasks() if t.get_name() == "session_idle_teardown" and not t.done()]
    assert len(pending) == 1
    await mgr.close()
    assert mgr._idle_task is None


@pytest.mark.asyncio
async def test_close_force_releases_held_contexts(stubs):
    behavior, chromium, _ = stubs
    behavior.goto_gate = asyncio.Event()
    mgr = RenderSessionManager(_cfg())

    render = asyncio.create_task(mgr.render(URL))
    while not behavior.goto_calls:
        await asyncio.sleep(0.01)
    assert mgr.active_contexts == 1

    await mgr.close()
    ctx = chromium.browsers[0].contexts[0]
    assert ctx.closed is True
    assert mgr.state is SessionState.CLOSED

    behavior.goto_gate.set()
    with pytest.raises(SessionUnavailableError):
        await render


@pytest.mark.asyncio
async def test_stats_shape(stubs):
    mgr = RenderSessionManager(_cfg())
    assert mgr.stats()["isInitialized"] is False
    await mgr.render(URL)
    s = mgr.stats()
    assert s["isInitialized"] is True
    assert s["browserConnected"] is True
    assert s["requestCount"] == 1
    assert s["activeContexts"] == 0
    await mgr.close()


@pytest.mark.asyncio
async def test_shared_manager_accessor_and_shutdown(stubs, monkeypatch):
    monkeypatch.setattr(session_mod, "_GLOBAL_MANAGER", None)
    mgr = session_mod.get_session_manager(_cfg())
    assert session_mod.get_session_manager() is mgr

    await mgr.render(URL)
    await session_mod.shutdown_session_manager()

    assert mgr.state is SessionState.CLOSED
    assert session_mod.get_session_manager(_cfg()) is not mgr
    await session_mod.shutdown_session_manager()


@pytest.mark.asyncio
async def test_idle_timer_does_not_tear_down_during_long_render(stubs):
    behavior, chromium, _ = stubs
    behavior.goto_delay = 0.25
    mgr = RenderSessionManager(_cfg(idle_timeout_s=0.05))

    page = await mgr.render(URL)

    assert page.html == HTML
    assert mgr.launch_count == 1
    assert chromium.browsers[0].closed is False
    assert mgr.state is SessionState.READY

    # once idle, the timer still releases the browser
    await asyncio.sleep(0.2)
    assert mgr.state is SessionState.CLOSED
    await mgr.close()
