"""Constants shared across querycache modules."""

from __future__ import annotations

#: Default base URL; the public products API the demo endpoints target.
DEFAULT_BASE_URL: str = "https://dummyjson.com/"

#: Seconds an entry without subscribers is kept before it is reclaimed.
DEFAULT_GC_DELAY: float = 60.0

#: Seconds before an HTTP request is abandoned by :class:`HttpTransport`.
DEFAULT_REQUEST_TIMEOUT: float = 30.0

USER_AGENT: str = "querycache/1 (+aiohttp)"

#: Key segment used when an endpoint is called without arguments.
NO_ARGS_TOKEN: str = "undefined"
