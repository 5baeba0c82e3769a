"""Transport adapters.

The engine only needs something with ``async execute(request) -> payload``
that raises :class:`TransportError` / :class:`DecodeError` on failure.
:class:`HttpTransport` is the aiohttp-backed default; any coroutine
function taking a :class:`RequestDescriptor` can be wrapped with
:func:`as_transport`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, runtime_checkable

import aiohttp

from querycache._constants import DEFAULT_BASE_URL, DEFAULT_REQUEST_TIMEOUT, USER_AGENT
from querycache.exceptions import DecodeError, TransportError
from querycache.models.requests import RequestDescriptor

_logger = logging.getLogger(__name__)


@runtime_checkable
class Transport(Protocol):
    """Structural transport interface used by the request coordinator.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`HttpTransport`) concrete.
    """

    async def execute(self, request: RequestDescriptor) -> Any:
        ...


class FunctionTransport:
    """Adapt a plain ``async def fn(request)`` to :class:`Transport`."""

    def __init__(self, fn: Callable[[RequestDescriptor], Awaitable[Any]]) -> None:
        self._fn = fn

    async def execute(self, request: RequestDescriptor) -> Any:
        return await self._fn(request)


def as_transport(adapter: Transport | Callable[[RequestDescriptor], Awaitable[Any]]) -> Transport:
    if isinstance(adapter, Transport):
        return adapter
    if callable(adapter):
        return FunctionTransport(adapter)
    raise TypeError(f"transport must provide execute() or be callable, got {type(adapter).__name__}")


def _join_url(base_url: str, path: str) -> str:
    if not path:
        return base_url
    return f"{base_url.rstrip('/')}/{path}"


class HttpTransport:
    """JSON-over-HTTP transport (the ``fetchBaseQuery`` equivalent)."""

    def __init__(
        self,
        http_session: aiohttp.ClientSession,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        default_headers: Mapping[str, str] | None = None,
    ) -> None:
        self._http = http_session
        self._base_url = base_url
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._default_headers = dict(default_headers or {})

    @property
    def base_url(self) -> str:
        return self._base_url

    def _build_headers(self, request: RequestDescriptor) -> dict[str, str]:
        headers: dict[str, str] = {
            "accept": "application/json",
            "user-agent": USER_AGENT,
        }
        headers.update(self._default_headers)
        headers.update(request.headers)
        return headers

    async def execute(self, request: RequestDescriptor) -> Any:
        """Send *request* and return the decoded JSON body.

        Non-2xx responses raise :class:`TransportError` carrying the decoded
        body (or raw text) in ``data``. A 2xx body that is not JSON raises
        :class:`DecodeError`. An empty body decodes to ``None``.
        """
        url = _join_url(self._base_url, request.path)
        kwargs: dict[str, Any] = {
            "headers": self._build_headers(request),
            "timeout": self._timeout,
        }
        if request.params:
            kwargs["params"] = request.params
        if request.body is not None:
            kwargs["json"] = request.body

        _logger.debug("%s %s", request.method, url)

        try:
            async with self._http.request(request.method, url, **kwargs) as resp:
                status = resp.status
                text = await resp.text()
        except aiohttp.ClientError as exc:
            raise TransportError(
                f"Request to {request.path} failed: {exc}",
                endpoint=request.path,
            ) from exc
        except asyncio.TimeoutError as exc:
            raise TransportError(
                f"Request to {request.path} timed out",
                endpoint=request.path,
            ) from exc

        ok = 200 <= status < 300
        if not text.strip():
            payload: Any = None
        else:
            try:
                payload = json.loads(text)
            except json.JSONDecodeError as exc:
                if ok:
                    raise DecodeError(
                        f"Invalid JSON from {request.path}: {text[:200]}",
                        endpoint=request.path,
                        data=text[:200],
                    ) from exc
                payload = text

        if not ok:
            raise TransportError(
                f"HTTP {status} from {request.path}",
                status_code=status,
                endpoint=request.path,
                data=payload,
            )
        return payload
