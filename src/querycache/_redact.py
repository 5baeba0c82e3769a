"""Credential masking for DEBUG request logs.

Credentials can sit in headers, JSON bodies, ``params`` or in a query
string baked into the request path. Fields are matched by name after
folding case and dropping ``-``/``_``, so ``X-Api-Key``, ``api_key`` and
``apiKey`` are all caught.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from urllib.parse import parse_qsl, urlencode

from querycache.models.requests import RequestDescriptor

MASK = "<redacted>"

_SENSITIVE_NAMES: frozenset[str] = frozenset(
    {
        "authorization",
        "proxyauthorization",
        "cookie",
        "setcookie",
        "apikey",
        "xapikey",
        "session",
        "sessionid",
        "passwd",
    }
)
_SENSITIVE_SUFFIXES: tuple[str, ...] = ("token", "secret", "password")


def is_sensitive(name: str) -> bool:
    folded = name.lower().replace("-", "").replace("_", "")
    return folded in _SENSITIVE_NAMES or folded.endswith(_SENSITIVE_SUFFIXES)


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}…<truncated>"


def _mask_path(path: str) -> str:
    base, sep, query = path.partition("?")
    if not sep:
        return path
    pairs = [(k, MASK if is_sensitive(k) else v) for k, v in parse_qsl(query, keep_blank_values=True)]
    return f"{base}?{urlencode(pairs, safe='<>')}"


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a masked, log-safe copy of *value*.

    Mappings have sensitive keys masked, sequences are walked, long strings
    are clipped and anything unrecognised is rendered with ``repr``.
    """
    if _depth > 20:
        return "<max-depth>"
    if isinstance(value, RequestDescriptor):
        dumped = value.model_dump()
        dumped["path"] = _mask_path(value.path)
        return redact_for_log(dumped, max_string=max_string, _depth=_depth + 1)
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _clip(value, max_string)
    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"
    if isinstance(value, Mapping):
        return {
            str(k): MASK if is_sensitive(str(k)) else redact_for_log(v, max_string=max_string, _depth=_depth + 1)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]
    return repr(value)


def describe_request(request: RequestDescriptor) -> str:
    """One-line rendering of *request* for DEBUG logs, credentials masked."""
    safe = redact_for_log(request)
    parts = [safe["method"], safe["path"]]
    for field in ("params", "headers", "body"):
        if safe.get(field):
            parts.append(f"{field}={safe[field]}")
    return " ".join(parts)
