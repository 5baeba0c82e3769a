"""Deterministic cache-key derivation.

A key has the form ``<endpoint>(<canonical JSON of args>)``, e.g.
``getProduct("iphone")`` or ``search({"limit":5,"q":"phone"})``.
Mapping keys are sorted so insertion order never changes the key.
"""

from __future__ import annotations

import dataclasses
import json
import math
from collections.abc import Mapping
from typing import Any, Final

from pydantic import BaseModel

from querycache._constants import NO_ARGS_TOKEN
from querycache.exceptions import QueryArgsError


class _NoArgs:
    """Sentinel for endpoints called without arguments."""

    _instance: _NoArgs | None = None

    def __new__(cls) -> _NoArgs:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NO_ARGS"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> _NoArgs:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> _NoArgs:
        return self


NO_ARGS: Final = _NoArgs()


def normalize_args(args: Any) -> Any:
    """Map ``None`` onto :data:`NO_ARGS` so both spell "no arguments"."""
    if args is None:
        return NO_ARGS
    return args


def _canonical(value: Any, _depth: int = 0) -> Any:
    if _depth > 50:
        raise QueryArgsError("query args nested too deeply")

    if value is None or isinstance(value, (str, bool, int)):
        return value

    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise QueryArgsError(f"non-finite float in query args: {value!r}")
        return value

    if isinstance(value, BaseModel):
        return _canonical(value.model_dump(mode="json"), _depth + 1)

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _canonical(dataclasses.asdict(value), _depth + 1)

    if isinstance(value, Mapping):
        canonical: dict[str, Any] = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise QueryArgsError(f"mapping keys in query args must be str, got {type(k).__name__}")
            canonical[k] = _canonical(v, _depth + 1)
        return canonical

    if isinstance(value, (list, tuple)):
        return [_canonical(v, _depth + 1) for v in value]

    if isinstance(value, (set, frozenset)):
        # A set would serialize like the list of its members and share its key.
        raise QueryArgsError("sets are not allowed in query args; pass a sorted list instead")

    raise QueryArgsError(f"cannot serialize query args of type {type(value).__name__}")


def serialize_args(args: Any = NO_ARGS) -> str:
    """Return the canonical text form of *args*."""
    args = normalize_args(args)
    if args is NO_ARGS:
        return NO_ARGS_TOKEN
    return json.dumps(
        _canonical(args),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def build_key(endpoint_name: str, args: Any = NO_ARGS) -> str:
    """Derive the cache key for one endpoint call. Pure and deterministic."""
    return f"{endpoint_name}({serialize_args(args)})"
