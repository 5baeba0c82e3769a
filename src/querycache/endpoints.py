"""Endpoint declarations.

Endpoints are declared once, through a builder, and are immutable
afterwards::

    registry = define_endpoints(
        lambda build: {
            "getAllProducts": build.query(lambda: "products"),
            "getProduct": build.query(lambda product: f"products/search?q={product}"),
        }
    )
"""

from __future__ import annotations

import dataclasses
import inspect
import re
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from enum import StrEnum
from typing import Any, TypeAlias

from querycache.exceptions import EndpointDefinitionError, QueryArgsError, UnknownEndpointError
from querycache.keys import NO_ARGS, normalize_args
from querycache.models.requests import RequestDescriptor

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")

Tag: TypeAlias = str | tuple[str, Any]
NormalizedTag: TypeAlias = tuple[str, Any]
TagsSpec: TypeAlias = Sequence[Tag] | Callable[[Any, Any, Any], Iterable[Tag]] | None


class EndpointKind(StrEnum):
    QUERY = "query"
    MUTATION = "mutation"


def normalize_tag(tag: Tag) -> NormalizedTag:
    """Normalize ``"Product"`` to ``("Product", None)``; pairs pass through."""
    if isinstance(tag, str):
        return (tag, None)
    if isinstance(tag, tuple) and len(tag) == 2 and isinstance(tag[0], str):
        return (tag[0], tag[1])
    raise EndpointDefinitionError(f"invalid tag: {tag!r} (expected str or (type, id) pair)")


def tag_matches(invalidating: NormalizedTag, provided: NormalizedTag) -> bool:
    """A bare type invalidates every id of that type; a pair only itself."""
    tag_type, tag_id = invalidating
    if tag_type != provided[0]:
        return False
    return tag_id is None or tag_id == provided[1]


def _accepts_argument(fn: Callable[..., Any]) -> bool:
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return True
    for param in signature.parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD):
            return True
    return False


@dataclasses.dataclass(frozen=True, slots=True)
class EndpointDefinition:
    """One declared endpoint.

    ``build_request`` turns call arguments into a :class:`RequestDescriptor`
    (or a bare path string meaning ``GET <path>``). A builder that takes no
    parameters is called without arguments.
    """

    build_request: Callable[..., RequestDescriptor | str]
    kind: EndpointKind = EndpointKind.QUERY
    name: str = ""
    transform_response: Callable[[Any, Any], Any] | None = None
    provides_tags: TagsSpec = None
    invalidates_tags: TagsSpec = None
    keep_unused_data_for: float | None = None
    takes_args: bool = True

    @property
    def is_query(self) -> bool:
        return self.kind == EndpointKind.QUERY

    @property
    def is_mutation(self) -> bool:
        return self.kind == EndpointKind.MUTATION

    def request_for(self, args: Any = NO_ARGS) -> RequestDescriptor:
        """Build the transport request for *args*."""
        args = normalize_args(args)
        if not self.takes_args:
            if args is not NO_ARGS:
                raise QueryArgsError(f"endpoint {self.name!r} takes no arguments, got {args!r}")
            return RequestDescriptor.coerce(self.build_request())
        return RequestDescriptor.coerce(self.build_request(None if args is NO_ARGS else args))

    def transform(self, payload: Any, args: Any) -> Any:
        if self.transform_response is None:
            return payload
        return self.transform_response(payload, None if args is NO_ARGS else args)

    def _resolve_tags(self, spec: TagsSpec, result: Any, error: Any, args: Any) -> frozenset[NormalizedTag]:
        if spec is None:
            return frozenset()
        tags = spec(result, error, None if args is NO_ARGS else args) if callable(spec) else spec
        return frozenset(normalize_tag(tag) for tag in tags or ())

    def provided_tags(self, result: Any, error: Any, args: Any) -> frozenset[NormalizedTag]:
        return self._resolve_tags(self.provides_tags, result, error, args)

    def invalidated_tags(self, result: Any, error: Any, args: Any) -> frozenset[NormalizedTag]:
        return self._resolve_tags(self.invalidates_tags, result, error, args)


class EndpointBuilder:
    """Factory handed to :func:`define_endpoints` (``build.query`` / ``build.mutation``)."""

    def query(
        self,
        build_request: Callable[..., RequestDescriptor | str],
        *,
        transform_response: Callable[[Any, Any], Any] | None = None,
        provides_tags: TagsSpec = None,
        keep_unused_data_for: float | None = None,
    ) -> EndpointDefinition:
        if keep_unused_data_for is not None and keep_unused_data_for < 0:
            raise EndpointDefinitionError("keep_unused_data_for must be >= 0")
        return self._make(
            build_request,
            kind=EndpointKind.QUERY,
            transform_response=transform_response,
            provides_tags=provides_tags,
            keep_unused_data_for=keep_unused_data_for,
        )

    def mutation(
        self,
        build_request: Callable[..., RequestDescriptor | str],
        *,
        transform_response: Callable[[Any, Any], Any] | None = None,
        invalidates_tags: TagsSpec = None,
    ) -> EndpointDefinition:
        return self._make(
            build_request,
            kind=EndpointKind.MUTATION,
            transform_response=transform_response,
            invalidates_tags=invalidates_tags,
        )

    @staticmethod
    def _make(build_request: Callable[..., RequestDescriptor | str], **kwargs: Any) -> EndpointDefinition:
        if not callable(build_request):
            raise EndpointDefinitionError("build_request must be callable")
        return EndpointDefinition(
            build_request=build_request,
            takes_args=_accepts_argument(build_request),
            **kwargs,
        )


class EndpointRegistry(Mapping[str, EndpointDefinition]):
    """Immutable name -> definition mapping."""

    def __init__(self, definitions: Iterable[EndpointDefinition]) -> None:
        endpoints: dict[str, EndpointDefinition] = {}
        for definition in definitions:
            if not isinstance(definition, EndpointDefinition):
                raise EndpointDefinitionError(f"expected EndpointDefinition, got {type(definition).__name__}")
            if not _NAME_RE.match(definition.name):
                raise EndpointDefinitionError(f"invalid endpoint name: {definition.name!r}")
            if definition.name in endpoints:
                raise EndpointDefinitionError(f"duplicate endpoint name: {definition.name!r}")
            endpoints[definition.name] = definition
        self._endpoints = endpoints

    def __getitem__(self, name: str) -> EndpointDefinition:
        try:
            return self._endpoints[name]
        except KeyError:
            raise UnknownEndpointError(name) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._endpoints)

    def __len__(self) -> int:
        return len(self._endpoints)

    def __repr__(self) -> str:
        return f"EndpointRegistry({sorted(self._endpoints)!r})"

    def require(self, name: str, kind: EndpointKind) -> EndpointDefinition:
        """Look up *name* and check it was declared as *kind*."""
        definition = self[name]
        if definition.kind != kind:
            raise EndpointDefinitionError(f"endpoint {name!r} is a {definition.kind}, not a {kind}")
        return definition


def define_endpoints(
    factory: Callable[[EndpointBuilder], Mapping[str, EndpointDefinition]],
) -> EndpointRegistry:
    """Build a registry from ``factory(builder) -> {name: definition}``."""
    declared = factory(EndpointBuilder())
    if not isinstance(declared, Mapping):
        raise EndpointDefinitionError("endpoint factory must return a mapping of name -> definition")
    named: list[EndpointDefinition] = []
    for name, definition in declared.items():
        if not isinstance(definition, EndpointDefinition):
            raise EndpointDefinitionError(f"endpoint {name!r} must be built with build.query() or build.mutation()")
        named.append(dataclasses.replace(definition, name=name))
    return EndpointRegistry(named)
