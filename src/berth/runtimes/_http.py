"""HTTP transport for the API backends (httpx).

One ``HttpTransport`` wraps an ``httpx.Client``. It speaks either to a Unix
socket (the Docker Engine) or to a TCP endpoint (the Kubernetes API), and
always returns status + body instead of raising on 4xx/5xx, so each adapter
maps status codes onto its own error taxonomy.

    .. code-block:: text

        call(path, method, body, headers, timeout)  → HttpResponse(status, body)
        stream(path, ..., sink)                      → HttpResponse(status, b"")
             └── response.iter_bytes() chunks ──► sink(chunk)   (demultiplexer)

Transport failures are translated here: a read/connect deadline becomes
``Timeout``, anything else ``BackendError``.
"""

from __future__ import annotations

import json
import ssl
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from berth.core.errors import BackendError, Timeout
from berth.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class HttpResponse:
    """Status, raw body and headers of a finished request."""

    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except ValueError as exc:
            raise BackendError(
                f"Response is not JSON (HTTP {self.status})",
                diagnostic=self.text,
                cause=exc,
            ) from exc


class HttpTransport:
    """Thin request/response wrapper over ``httpx.Client``.

    Args:
        base_url: ``http://docker/v1.43`` for a socket, or the API server URL
        uds: Unix socket path; when set all requests go over it
        headers: Sent on every request (e.g. bearer token)
        verify: TLS verification flag, or a CA bundle path
        timeout: Default per-request timeout in seconds
        transport: Injected ``httpx`` transport (``httpx.MockTransport`` in tests)
        clock: Monotonic clock for stream deadlines
    """

    def __init__(
        self,
        base_url: str,
        *,
        uds: str | Path | None = None,
        headers: Mapping[str, str] | None = None,
        verify: bool | str | Path = True,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        if isinstance(verify, (str, Path)):
            verify_arg: bool | ssl.SSLContext = ssl.create_default_context(cafile=str(verify))
        else:
            verify_arg = verify
        if transport is None:
            transport = httpx.HTTPTransport(
                uds=str(uds) if uds is not None else None,
                verify=verify_arg,
            )
        self._timeout = timeout
        self._client = httpx.Client(
            base_url=base_url,
            headers=dict(headers or {}),
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpTransport:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _build(
        self,
        path: str,
        method: str,
        body: Any,
        headers: Mapping[str, str] | None,
        params: Mapping[str, Any] | None,
        timeout: float | None,
    ) -> httpx.Request:
        kwargs: dict[str, Any] = {
            "headers": dict(headers or {}),
            "params": {k: v for k, v in (params or {}).items() if v is not None},
            "timeout": timeout if timeout is not None else self._timeout,
        }
        if isinstance(body, (bytes, str)):
            kwargs["content"] = body
        elif body is not None:
            kwargs["json"] = body
        return self._client.build_request(method, path, **kwargs)

    def call(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> HttpResponse:
        """Send one request and read the whole body."""
        request = self._build(path, method, body, headers, params, timeout)
        try:
            response = self._client.send(request)
        except httpx.TimeoutException as exc:
            raise Timeout(f"{method} {path} timed out", seconds=timeout, cause=exc) from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"{method} {path} failed: {exc}", diagnostic=str(exc), cause=exc) from exc

        logger.debug("http.response", method=method, path=path, status=response.status_code)
        return HttpResponse(
            status=response.status_code,
            body=response.content,
            headers=dict(response.headers),
        )

    def stream(
        self,
        path: str,
        sink: Callable[[bytes], None],
        method: str = "POST",
        body: Any = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> HttpResponse:
        """Send one request and feed the response bytes to ``sink``.

        On a non-2xx status nothing is fed; the error body is returned
        instead so the caller can classify it. ``timeout`` bounds the whole
        exchange, not just each read: a stream still producing output when
        it runs out is closed and reported as ``Timeout``.
        """
        request = self._build(path, method, body, headers, params, timeout)
        deadline = self._clock() + timeout if timeout is not None else None
        try:
            response = self._client.send(request, stream=True)
            try:
                if response.status_code >= 300:
                    content = response.read()
                    return HttpResponse(
                        status=response.status_code,
                        body=content,
                        headers=dict(response.headers),
                    )
                for chunk in response.iter_bytes():
                    sink(chunk)
                    if deadline is not None and self._clock() > deadline:
                        raise Timeout(f"{method} {path} timed out", seconds=timeout)
                return HttpResponse(status=response.status_code, headers=dict(response.headers))
            finally:
                response.close()
        except httpx.TimeoutException as exc:
            raise Timeout(f"{method} {path} timed out", seconds=timeout, cause=exc) from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"{method} {path} failed: {exc}", diagnostic=str(exc), cause=exc) from exc


__all__ = ["HttpResponse", "HttpTransport"]
