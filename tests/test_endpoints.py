from __future__ import annotations

import pytest

from querycache import RequestDescriptor, define_endpoints
from querycache.endpoints import (
    EndpointBuilder,
    EndpointDefinition,
    EndpointKind,
    EndpointRegistry,
    normalize_tag,
    tag_matches,
)
from querycache.exceptions import EndpointDefinitionError, QueryArgsError, UnknownEndpointError


def test_string_path_means_get(registry: EndpointRegistry) -> None:
    request = registry["getAllProducts"].request_for()

    assert request == RequestDescriptor(path="products", method="GET")


def test_builder_receives_args(registry: EndpointRegistry) -> None:
    request = registry["getProduct"].request_for("iphone")

    assert request.path == "products/search?q=iphone"
    assert request.method == "GET"


def test_mutation_descriptor_carries_method_and_body(registry: EndpointRegistry) -> None:
    definition = registry["addProduct"]
    request = definition.request_for({"title": "New"})

    assert definition.kind == EndpointKind.MUTATION
    assert definition.is_mutation
    assert request.method == "POST"
    assert request.body == {"title": "New"}


def test_zero_parameter_builder_rejects_args(registry: EndpointRegistry) -> None:
    with pytest.raises(QueryArgsError):
        registry["getAllProducts"].request_for("unexpected")


def test_builder_with_parameter_gets_none_when_called_without_args() -> None:
    seen: list[object] = []

    def build(args: object) -> str:
        seen.append(args)
        return "products"

    registry = define_endpoints(lambda build_: {"list": build_.query(build)})
    registry["list"].request_for()

    assert seen == [None]


def test_registry_is_read_only_mapping(registry: EndpointRegistry) -> None:
    assert "getProduct" in registry
    assert "missing" not in registry
    assert registry.get("missing") is None
    assert set(registry) == {"getAllProducts", "getProduct", "searchProducts", "productTitles", "addProduct"}
    assert not hasattr(registry, "__setitem__")


def test_unknown_endpoint_raises_keyerror_subclass(registry: EndpointRegistry) -> None:
    with pytest.raises(UnknownEndpointError) as excinfo:
        registry["getCart"]

    assert isinstance(excinfo.value, KeyError)
    assert "getCart" in str(excinfo.value)


def test_require_checks_kind(registry: EndpointRegistry) -> None:
    assert registry.require("getProduct", EndpointKind.QUERY).name == "getProduct"
    with pytest.raises(EndpointDefinitionError):
        registry.require("addProduct", EndpointKind.QUERY)


def test_definitions_are_frozen(registry: EndpointRegistry) -> None:
    with pytest.raises(AttributeError):
        registry["getProduct"].name = "other"  # type: ignore[misc]


def test_invalid_endpoint_names_rejected() -> None:
    with pytest.raises(EndpointDefinitionError):
        define_endpoints(lambda build: {"get product(": build.query(lambda: "x")})


def test_factory_values_must_be_definitions() -> None:
    with pytest.raises(EndpointDefinitionError):
        define_endpoints(lambda build: {"getAllProducts": "products"})  # type: ignore[dict-item]


def test_non_callable_builder_rejected() -> None:
    with pytest.raises(EndpointDefinitionError):
        EndpointBuilder().query("products")  # type: ignore[arg-type]


def test_duplicate_names_rejected() -> None:
    definition = EndpointDefinition(build_request=lambda: "a", name="a")
    with pytest.raises(EndpointDefinitionError):
        EndpointRegistry([definition, definition])


def test_unsupported_method_rejected() -> None:
    with pytest.raises(ValueError):
        RequestDescriptor(path="products", method="FETCH")


def test_leading_slash_stripped_and_method_normalized() -> None:
    request = RequestDescriptor(path="/products", method="post")

    assert request.path == "products"
    assert request.method == "POST"


def test_tags_normalize_and_match() -> None:
    assert normalize_tag("Product") == ("Product", None)
    assert normalize_tag(("Product", 3)) == ("Product", 3)

    assert tag_matches(("Product", None), ("Product", 3))
    assert tag_matches(("Product", 3), ("Product", 3))
    assert not tag_matches(("Product", 3), ("Product", 4))
    assert not tag_matches(("Cart", None), ("Product", 3))

    with pytest.raises(EndpointDefinitionError):
        normalize_tag(42)  # type: ignore[arg-type]


def test_provided_tags_from_callable(registry: EndpointRegistry) -> None:
    tags = registry["getProduct"].provided_tags({"products": []}, None, "iphone")

    assert tags == frozenset({("Product", "iphone")})


def test_transform_response_applied(registry: EndpointRegistry) -> None:
    payload = {"products": [{"title": "iPhone 9"}, {"title": "Galaxy"}]}

    assert registry["productTitles"].transform(payload, None) == ["iPhone 9", "Galaxy"]
