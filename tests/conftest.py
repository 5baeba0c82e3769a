from __future__ import annotations

import pytest
from fakes import IPHONE, PRODUCTS, ControlledTransport, StaticTransport, products_registry

from querycache.endpoints import EndpointRegistry


@pytest.fixture
def registry() -> EndpointRegistry:
    return products_registry()


@pytest.fixture
def static_transport() -> StaticTransport:
    return StaticTransport(
        responses={
            "products": PRODUCTS,
            "products/search?q=iphone": IPHONE,
            "products/search": {"products": [], "total": 0},
            "products/add": {"id": 101, "title": "New"},
        }
    )


@pytest.fixture
def controlled_transport() -> ControlledTransport:
    return ControlledTransport()
