"""Custom exception hierarchy for querycache."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from querycache.models.results import ErrorInfo


class QueryCacheError(Exception):
    """Base exception for all querycache errors."""


class QueryCacheConfigError(QueryCacheError):
    """Invalid or missing configuration."""


class EndpointDefinitionError(QueryCacheError):
    """An endpoint was declared or used incorrectly."""


class UnknownEndpointError(QueryCacheError, KeyError):
    """No endpoint is registered under the requested name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown endpoint: {name!r}")

    def __str__(self) -> str:
        return str(self.args[0])


class UnknownQueryError(QueryCacheError, KeyError):
    """No cache entry exists for the requested key."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"No cache entry for key: {key!r}")

    def __str__(self) -> str:
        return str(self.args[0])


class QueryArgsError(QueryCacheError, TypeError):
    """Query arguments could not be serialized into a cache key."""


class TransportError(QueryCacheError):
    """Transport-level failure (network, non-2xx status, timeout).

    ``data`` carries whatever detail the adapter has about the failure,
    usually the decoded response body.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
        data: Any = None,
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        self.data = data
        super().__init__(message)


class DecodeError(QueryCacheError):
    """Payload could not be interpreted (invalid JSON, transform failure)."""

    def __init__(self, message: str, *, endpoint: str = "", data: Any = None) -> None:
        self.endpoint = endpoint
        self.data = data
        super().__init__(message)


class StaleResponseDiscarded(QueryCacheError):
    """A result arrived for a request that has since been superseded.

    Internal: raised and caught inside the coordinator, never delivered to
    observers.
    """

    def __init__(self, key: str, request_id: int, current_request_id: int | None) -> None:
        self.key = key
        self.request_id = request_id
        self.current_request_id = current_request_id
        super().__init__(
            f"Discarded result of request {request_id} for {key} (current: {current_request_id})"
        )


class QueryFailedError(QueryCacheError):
    """Raised by ``unwrap()`` when a query or mutation ended in error."""

    def __init__(self, error: ErrorInfo) -> None:
        self.error = error
        super().__init__(error.message or f"Query failed ({error.kind})")
