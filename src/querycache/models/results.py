"""Observer-facing state models.

Everything here is frozen: observers receive snapshots, never the live
cache entry.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict

from querycache.exceptions import DecodeError, QueryFailedError, TransportError


class QueryStatus(StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class ErrorKind(StrEnum):
    TRANSPORT = "transport"
    DECODE = "decode"
    UNKNOWN = "unknown"


class ErrorInfo(BaseModel):
    """Description of a failed fetch as delivered to observers."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ErrorKind
    status: int | None = None
    message: str = ""
    data: Any = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorInfo:
        if isinstance(exc, TransportError):
            return cls(kind=ErrorKind.TRANSPORT, status=exc.status_code, message=str(exc), data=exc.data)
        if isinstance(exc, DecodeError):
            return cls(kind=ErrorKind.DECODE, message=str(exc), data=exc.data)
        return cls(kind=ErrorKind.UNKNOWN, message=f"{type(exc).__name__}: {exc}")


class QuerySnapshot(BaseModel):
    """Immutable view of one cache entry.

    The ``is_*`` flags follow the usual query-hook conventions:
    ``is_loading`` is only true for the first load (no data yet), while
    ``is_fetching`` is true for any request in flight.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    key: str
    endpoint_name: str
    status: QueryStatus = QueryStatus.IDLE
    data: Any = None
    error: ErrorInfo | None = None
    request_id: int = 0
    started_at: datetime | None = None
    fulfilled_at: datetime | None = None

    @property
    def is_uninitialized(self) -> bool:
        return self.status == QueryStatus.IDLE

    @property
    def is_fetching(self) -> bool:
        return self.status == QueryStatus.LOADING

    @property
    def is_loading(self) -> bool:
        return self.status == QueryStatus.LOADING and self.data is None

    @property
    def is_success(self) -> bool:
        return self.status == QueryStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.status == QueryStatus.ERROR

    def unwrap(self) -> Any:
        """Return ``data`` or raise :class:`QueryFailedError`."""
        if self.status == QueryStatus.ERROR and self.error is not None:
            raise QueryFailedError(self.error)
        return self.data


class MutationResult(BaseModel):
    """Outcome of one mutation call. Mutations are never cached."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    endpoint_name: str
    status: QueryStatus
    data: Any = None
    error: ErrorInfo | None = None

    @property
    def is_success(self) -> bool:
        return self.status == QueryStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.status == QueryStatus.ERROR

    def unwrap(self) -> Any:
        if self.error is not None:
            raise QueryFailedError(self.error)
        return self.data
