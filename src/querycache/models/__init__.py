"""Data models for querycache."""

from querycache.models.requests import RequestDescriptor
from querycache.models.results import (
    ErrorInfo,
    ErrorKind,
    MutationResult,
    QuerySnapshot,
    QueryStatus,
)

__all__ = [
    "ErrorInfo",
    "ErrorKind",
    "MutationResult",
    "QuerySnapshot",
    "QueryStatus",
    "RequestDescriptor",
]
