from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .classifier import ClassificationResult, Verdict
from .config import Config
from .fetcher import FetchClient
from .session import RenderSessionManager
from .utils import (
    ERROR_MESSAGES,
    INVALID_FORMAT,
    AttemptTimeoutError,
    ClassifierError,
    ErrorKind,
    RateLimitedError,
    SessionUnavailableError,
    TargetValidationError,
    TransientFetchError,
    http_status_to_exc,
    parse_retry_after_header,
)

logger = logging.getLogger(__name__)


def analyzer_http_client(cfg: Config, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """
    AsyncClient pointed at a running analyzer service. The per-attempt
    ceiling is enforced by FetchClient; the client timeout matches it.
    """
    limits = httpx.Limits(max_keepalive_connections=8, max_connections=16)
    timeout = httpx.Timeout(cfg.request_timeout_ms / 1000.0)
    headers = {
        "Accept": "application/json",
        "Content-Type": "application/json",
    }
    return httpx.AsyncClient(
        base_url=cfg.remote_base_url.rstrip("/"),
        limits=limits,
        timeout=timeout,
        headers=headers,
        transport=transport,
    )


def _json_body(resp: httpx.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _verdict(raw: Any) -> Verdict:
    try:
        return Verdict(raw)
    except ValueError:
        return Verdict.ERROR


class RemoteFetchClient(FetchClient):
    """FetchClient whose attempt is a POST /analyze against a remote analyzer."""

    def __init__(self, cfg: Config, *, client: Optional[httpx.AsyncClient] = None):
        super().__init__(cfg)
        self._client = client

    def _default_session(self, cfg: Config) -> Optional[RenderSessionManager]:
        return None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = analyzer_http_client(self.cfg)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def health(self) -> Dict[str, Any]:
        try:
            resp = await self.client.get("/health")
        except httpx.HTTPError as e:
            return {"status": "unhealthy", "error": str(e)}
        body = _json_body(resp)
        body.setdefault("status", "healthy" if resp.status_code == 200 else "unhealthy")
        return body

    async def _attempt(self, target: str) -> ClassificationResult:
        try:
            resp = await self.client.post("/analyze", json={"target": target})
        except httpx.TimeoutException as e:
            raise AttemptTimeoutError(ERROR_MESSAGES[ErrorKind.TIMEOUT]) from e
        except (httpx.ConnectError, httpx.RemoteProtocolError) as e:
            raise SessionUnavailableError(f"Analyzer service unreachable: {e}") from e
        except httpx.HTTPError as e:
            raise TransientFetchError(f"{ERROR_MESSAGES[ErrorKind.TRANSIENT]}: {e}") from e

        body = _json_body(resp)
        status = resp.status_code
        message = body.get("error") or f"HTTP {status}"

        if status == 200:
            debug = body.get("debug") or {}
            return ClassificationResult(
                product_fiche=_verdict(body.get("productFiche")),
                energy_label=_verdict(body.get("energyLabel")),
                mouseover_label=_verdict(body.get("mouseoverLabel")),
                reasons=dict(debug.get("reasons") or {}),
                diagnostics=dict(debug.get("diagnostics") or {}),
            )
        if status == 400:
            raise TargetValidationError(body.get("code") or INVALID_FORMAT, message)
        if status == 422:
            # the service has already run its own retries
            raise ClassifierError(message)
        if status == 429:
            raise RateLimitedError(message, parse_retry_after_header(resp.headers))
        if status == 503:
            raise SessionUnavailableError(f"Analyzer service unavailable ({body.get('status', 'unknown')})")

        exc = http_status_to_exc(status, resp.headers)
        logger.debug("Unexpected analyzer response %s for %s", status, target)
        raise exc if exc is not None else TransientFetchError(f"Unexpected HTTP {status}")
