import json

import httpx
import pytest

from labelscan.classifier import Verdict
from labelscan.config import load_config
from labelscan.remote import RemoteFetchClient, analyzer_http_client
from labelscan.utils import ErrorKind

URL = "https://www.ebay.de/itm/1234567890"


def _client(handler, **overrides):
    base = dict(retry_count=2, retry_base_delay_ms=0, remote_base_url="http://analyzer.test")
    base.update(overrides)
    cfg = load_config().with_overrides(**base)
    http = analyzer_http_client(cfg, transport=httpx.MockTransport(handler))
    return RemoteFetchClient(cfg, client=http)


class Counter:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        resp = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(resp, Exception):
            raise resp
        return resp


@pytest.mark.asyncio
async def test_remote_success_maps_body():
    handler = Counter(httpx.Response(200, json={
        "productFiche": "Y", "energyLabel": "N", "mouseoverLabel": "Y",
        "debug": {"reasons": {"productFiche": "path"}},
    }))
    client = _client(handler)

    out = await client.fetch(URL)

    assert out.ok
    assert out.result.verdicts == (Verdict.YES, Verdict.NO, Verdict.YES)
    assert out.result.reasons == {"productFiche": "path"}
    req = handler.requests[0]
    assert req.url.path == "/analyze"
    assert json.loads(req.content) == {"target": URL}
    assert client.session is None
    await client.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("status, body, kind", [
    (400, {"error": "bad", "code": "INVALID_FORMAT"}, ErrorKind.VALIDATION),
    (422, {"error": "Failed to parse page content"}, ErrorKind.CLASSIFIER),
    (429, {"error": "slow down", "code": "RATE_LIMITED"}, ErrorKind.RATE_LIMITED),
])
async def test_remote_non_retryable_statuses(status, body, kind):
    handler = Counter(httpx.Response(status, json=body))
    client = _client(handler)

    out = await client.fetch(URL)

    assert out.error_kind is kind
    assert out.attempts == 1
    assert len(handler.requests) == 1
    assert out.result.is_error
    await client.aclose()


@pytest.mark.asyncio
async def test_remote_503_and_connect_errors_are_retried():
    handler = Counter(
        httpx.Response(503, json={"status": "initializing"}),
        httpx.ConnectError("refused"),
        httpx.Response(200, json={"productFiche": "N", "energyLabel": "N", "mouseoverLabel": "N"}),
    )
    client = _client(handler)

    out = await client.fetch(URL)

    assert out.ok
    assert out.attempts == 3
    await client.aclose()


@pytest.mark.asyncio
async def test_remote_5xx_exhausts_retries():
    handler = Counter(httpx.Response(502, text="bad gateway"))
    client = _client(handler, retry_count=1)

    out = await client.fetch(URL)

    assert out.error_kind is ErrorKind.TRANSIENT
    assert out.attempts == 2
    assert len(handler.requests) == 2
    await client.aclose()


@pytest.mark.asyncio
async def test_remote_validation_happens_locally_first():
    handler = Counter(httpx.Response(200, json={}))
    client = _client(handler)

    out = await client.fetch("https://example.com/item/1")

    assert out.error_kind is ErrorKind.VALIDATION
    assert handler.requests == []
    await client.aclose()


@pytest.mark.asyncio
async def test_remote_health():
    handler = Counter(httpx.Response(200, json={"status": "degraded"}))
    client = _client(handler)

    assert (await client.health())["status"] == "degraded"
    assert handler.requests[0].url.path == "/health"
    await client.aclose()
