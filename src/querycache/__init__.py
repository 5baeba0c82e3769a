"""querycache - declarative, key-based async data fetching and caching."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("querycache")
except PackageNotFoundError:
    __version__ = "0+local"
from querycache.client import EndpointHandle, QueryClient
from querycache.config import QueryCacheConfig
from querycache.coordinator import RequestCoordinator
from querycache.endpoints import (
    EndpointBuilder,
    EndpointDefinition,
    EndpointKind,
    EndpointRegistry,
    define_endpoints,
)
from querycache.exceptions import (
    DecodeError,
    EndpointDefinitionError,
    QueryArgsError,
    QueryCacheConfigError,
    QueryCacheError,
    QueryFailedError,
    StaleResponseDiscarded,
    TransportError,
    UnknownEndpointError,
    UnknownQueryError,
)
from querycache.keys import NO_ARGS, build_key, serialize_args
from querycache.models import (
    ErrorInfo,
    ErrorKind,
    MutationResult,
    QuerySnapshot,
    QueryStatus,
    RequestDescriptor,
)
from querycache.store import CacheEntry, CacheStore
from querycache.subscriptions import ObserverHandle, SubscriptionManager
from querycache.transport import FunctionTransport, HttpTransport, Transport, as_transport

__all__ = [
    "__version__",
    "NO_ARGS",
    "CacheEntry",
    "CacheStore",
    "DecodeError",
    "EndpointBuilder",
    "EndpointDefinition",
    "EndpointDefinitionError",
    "EndpointHandle",
    "EndpointKind",
    "EndpointRegistry",
    "ErrorInfo",
    "ErrorKind",
    "FunctionTransport",
    "HttpTransport",
    "MutationResult",
    "ObserverHandle",
    "QueryArgsError",
    "QueryCacheConfig",
    "QueryCacheConfigError",
    "QueryCacheError",
    "QueryClient",
    "QueryFailedError",
    "QuerySnapshot",
    "QueryStatus",
    "RequestCoordinator",
    "RequestDescriptor",
    "StaleResponseDiscarded",
    "SubscriptionManager",
    "Transport",
    "TransportError",
    "UnknownEndpointError",
    "UnknownQueryError",
    "as_transport",
    "build_key",
    "define_endpoints",
    "serialize_args",
]
