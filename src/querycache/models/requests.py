"""Pydantic request descriptor produced by endpoint definitions."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"})


class RequestDescriptor(BaseModel):
    """What to send to the transport for one endpoint call.

    ``path`` is relative to the transport's base URL. ``body`` is sent as
    JSON when present.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        validate_default=True,
        str_strip_whitespace=True,
    )

    path: str
    method: str = "GET"
    body: Any = None
    params: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("method")
    @classmethod
    def _normalize_method(cls, value: str) -> str:
        method = value.strip().upper()
        if method not in _METHODS:
            raise ValueError(f"unsupported HTTP method: {value!r}")
        return method

    @field_validator("path")
    @classmethod
    def _strip_leading_slash(cls, value: str) -> str:
        # Paths are joined onto base_url, which carries the trailing slash.
        return value.lstrip("/")

    @classmethod
    def coerce(cls, value: RequestDescriptor | str) -> RequestDescriptor:
        """Accept a bare path string as shorthand for ``GET <path>``."""
        if isinstance(value, RequestDescriptor):
            return value
        if isinstance(value, str):
            return cls(path=value)
        raise TypeError(f"build_request must return a RequestDescriptor or str, got {type(value).__name__}")
