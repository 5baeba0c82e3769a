"""Client configuration for querycache."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from typing import Any

from querycache._constants import DEFAULT_BASE_URL, DEFAULT_GC_DELAY, DEFAULT_REQUEST_TIMEOUT
from querycache.exceptions import QueryCacheConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_float(env: Mapping[str, str], key: str) -> float | None:
    raw = env.get(key)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise QueryCacheConfigError(f"{key} must be a number, got {raw!r}") from exc


@dataclasses.dataclass(frozen=True)
class QueryCacheConfig:
    """Client configuration.

    Parameters
    ----------
    base_url : str
        Base URL prepended to every request path by :class:`HttpTransport`.
    gc_delay : float
        Seconds an entry with no subscribers is retained before removal.
        Endpoints may override this with ``keep_unused_data_for``.
    request_timeout : float
        Total timeout in seconds for one HTTP request.
    default_headers : Mapping[str, str]
        Headers sent with every HTTP request.
    refetch_on_invalidate : bool
        Refetch invalidated entries that still have subscribers right
        away. When disabled they are refetched on the next subscribe/read.
    """

    base_url: str = DEFAULT_BASE_URL
    gc_delay: float = DEFAULT_GC_DELAY
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    default_headers: Mapping[str, str] = dataclasses.field(default_factory=dict)
    refetch_on_invalidate: bool = True

    def __post_init__(self) -> None:
        if self.gc_delay < 0:
            raise QueryCacheConfigError(f"gc_delay must be >= 0, got {self.gc_delay}")
        if self.request_timeout <= 0:
            raise QueryCacheConfigError(f"request_timeout must be > 0, got {self.request_timeout}")
        if not self.base_url:
            raise QueryCacheConfigError("base_url must be non-empty")

    @classmethod
    def from_env(cls, **overrides: Any) -> QueryCacheConfig:
        """Create configuration from ``QUERYCACHE_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ
        config_kwargs: dict[str, Any] = {}

        base_url = env.get("QUERYCACHE_BASE_URL")
        if base_url is not None:
            config_kwargs["base_url"] = base_url

        gc_delay = _env_float(env, "QUERYCACHE_GC_DELAY")
        if gc_delay is not None and "gc_delay" not in overrides:
            config_kwargs["gc_delay"] = gc_delay

        timeout = _env_float(env, "QUERYCACHE_REQUEST_TIMEOUT")
        if timeout is not None and "request_timeout" not in overrides:
            config_kwargs["request_timeout"] = timeout

        if "refetch_on_invalidate" not in overrides:
            config_kwargs["refetch_on_invalidate"] = _env_bool(
                env.get("QUERYCACHE_REFETCH_ON_INVALIDATE"),
                True,
            )

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
