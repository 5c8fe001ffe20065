"""JSON-over-HTTP transport with per-request timeouts."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from tracksync._constants import USER_AGENT
from tracksync._redact import redact_for_log
from tracksync.exceptions import TransportError

_logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Structural transport interface used by the source and backend clients.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`JsonTransport`) concrete.
    """

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        payload: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> tuple[int, Any]:
        ...


class JsonTransport:
    """Send JSON requests over a shared :class:`aiohttp.ClientSession`.

    Non-2xx statuses are returned to the caller, which decides whether a 404
    means "not cached" or an error. Network failures, timeouts and
    undecodable 2xx bodies raise :class:`TransportError`.
    """

    def __init__(
        self,
        http_session: aiohttp.ClientSession,
        *,
        timeout: float = 30.0,
        trace: bool = False,
    ) -> None:
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._trace = trace

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        payload: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> tuple[int, Any]:
        request_headers: dict[str, str] = {
            "accept": "application/json, */*",
            "user-agent": USER_AGENT,
        }
        if headers:
            request_headers.update(headers)

        body: str | None = None
        if payload is not None:
            body = json.dumps(payload, separators=(",", ":"), default=str)
            request_headers.setdefault("content-type", "application/json; charset=UTF-8")

        _logger.debug("%s %s", method, url)
        if self._trace:
            _logger.debug(
                "request headers=%s payload=%s",
                redact_for_log(request_headers),
                redact_for_log(payload),
            )

        try:
            async with self._http.request(
                method,
                url,
                data=body,
                headers=request_headers,
                timeout=self._timeout,
            ) as resp:
                status = resp.status
                text = await resp.text()
        except aiohttp.ClientError as exc:
            raise TransportError(f"{method} {url} failed: {exc}", endpoint=url) from exc
        except TimeoutError as exc:
            raise TransportError(f"{method} {url} timed out", endpoint=url) from exc

        if not text.strip():
            return status, None

        try:
            decoded = json.loads(text)
        except json.JSONDecodeError as exc:
            if 200 <= status < 300:
                raise TransportError(
                    f"Invalid JSON from {url}: {text[:200]}",
                    status_code=status,
                    endpoint=url,
                ) from exc
            decoded = None

        if self._trace:
            _logger.debug("response status=%s body=%s", status, redact_for_log(decoded))
        return status, decoded
