# tests/test_utils.py
import asyncio
import pytest

from labelscan import utils
from labelscan.utils import (
    ErrorKind,
    TargetValidationError,
    validate_target,
)

ALLOWED = ("ebay.de", "ebay.com", "ebay.co.uk")


def test_get_base_domain_and_http_check():
    assert utils.get_base_domain("www.ebay.co.uk") == "ebay.co.uk"
    assert utils.get_base_domain("WWW.EBAY.DE") == "ebay.de"
    assert utils.get_base_domain("") == "unknown-host"
    assert utils.is_http_url("http://x")
    assert utils.is_http_url("https://x")
    assert not utils.is_http_url("ftp://x")


@pytest.mark.parametrize("url", [
    "https://www.ebay.de/itm/1234567890",
    "https://ebay.com/itm/1",
    "http://www.ebay.co.uk/itm/abc?hash=item1",
    "  https://www.ebay.de/itm/42  ",
])
def test_validate_target_accepts_marketplace_urls(url):
    validate_target(url, ALLOWED)


@pytest.mark.parametrize("target, code", [
    (None, utils.MISSING_TARGET),
    ("", utils.MISSING_TARGET),
    ("   ", utils.MISSING_TARGET),
    (12345, utils.INVALID_FORMAT),
    ("http://e", utils.INVALID_FORMAT),
    ("not a url at all", utils.INVALID_FORMAT),
    ("ftp://www.ebay.de/itm/1", utils.INVALID_FORMAT),
    ("https://www.ebay.de/itm/" + "x" * 2100, utils.INVALID_FORMAT),
    ("https://www.amazon.de/dp/B000", utils.NOT_SUPPORTED_DOMAIN),
    ("https://www.ebay.fr/itm/1", utils.NOT_SUPPORTED_DOMAIN),
    ("https://pages.ebay.de/help", utils.NOT_SUPPORTED_DOMAIN),
    ("https://ebay.de.evil.example/itm/1", utils.NOT_SUPPORTED_DOMAIN),
])
def test_validate_target_rejections(target, code):
    with pytest.raises(TargetValidationError) as ei:
        validate_target(target, ALLOWED)
    assert ei.value.code == code
    assert ei.value.kind is ErrorKind.VALIDATION
    assert ei.value.retryable is False


def test_error_kinds_retryability():
    assert utils.TransientFetchError("x").retryable
    assert utils.AttemptTimeoutError("x").retryable
    assert utils.SessionUnavailableError("x").retryable
    assert not utils.RateLimitedError("x").retryable
    assert not utils.UnsupportedTargetError("x").retryable
    assert not utils.ClassifierError("x").retryable
    assert not utils.SessionStartupError("x").retryable
    assert set(ErrorKind) == set(utils.ERROR_MESSAGES)


def test_http_status_to_exc_mapping():
    assert utils.http_status_to_exc(200) is None
    assert utils.http_status_to_exc(None) is None

    rl = utils.http_status_to_exc(429, {"Retry-After": "7"})
    assert isinstance(rl, utils.RateLimitedError)
    assert rl.retry_after_s == 7.0

    assert isinstance(utils.http_status_to_exc(404), utils.UnsupportedTargetError)
    assert isinstance(utils.http_status_to_exc(410), utils.UnsupportedTargetError)
    assert isinstance(utils.http_status_to_exc(503), utils.TransientFetchError)
    assert isinstance(utils.http_status_to_exc(403), utils.TransientFetchError)


def test_parse_retry_after_header():
    assert utils.parse_retry_after_header(None) is None
    assert utils.parse_retry_after_header({"retry-after": "12"}) == 12.0
    assert utils.parse_retry_after_header({"Retry-After": "garbage"}) is None
    # HTTP-date in the past clamps to zero
    assert utils.parse_retry_after_header({"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}) == 0.0


def test_looks_antibot_and_closed_errors():
    assert utils.looks_antibot("<title>Pardon Our Interruption...</title>")
    assert utils.looks_antibot("<p>Checking your browser before accessing</p>")
    assert not utils.looks_antibot("<div class='x-regulatory-wrapper'></div>")
    assert not utils.looks_antibot("")

    assert utils.is_closed_error(RuntimeError("Target page, context or browser has been closed"))
    assert not utils.is_closed_error(RuntimeError("net::ERR_CONNECTION_RESET"))


class _SlowClose:
    def __init__(self):
        self.started = False

    async def close(self):
        self.started = True
        await asyncio.sleep(10)


class _BrokenClose:
    async def close(self):
        raise RuntimeError("Target closed")


@pytest.mark.asyncio
async def test_try_close_is_bounded_and_quiet():
    slow = _SlowClose()
    await asyncio.wait_for(utils.try_close(slow, timeout_ms=100), timeout=2)
    assert slow.started

    await utils.try_close(_BrokenClose())
    await utils.try_close(None)


@pytest.mark.asyncio
async def test_await_cancelled_finishes_task():
    task = asyncio.create_task(asyncio.sleep(10))
    await utils.await_cancelled(task)
    assert task.cancelled()
    await utils.await_cancelled(None)
