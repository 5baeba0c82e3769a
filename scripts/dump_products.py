#!/usr/bin/env python3
"""Fetch the demo product endpoints through the query cache.

This script declares ``getAllProducts`` and ``getProduct`` against the
dummyjson products API, subscribes to both, and prints every state
transition the observers receive. It then reads both again to show they
are served from cache.

Usage
-----
::

    python scripts/dump_products.py
    python scripts/dump_products.py --product samsung --json

Options::

    --product NAME      Search term for getProduct (default: iphone)
    --base-url URL      API base URL (default: QUERYCACHE_BASE_URL or dummyjson)
    --json              Output the final snapshots as machine-readable JSON
    --output FILE       Write JSON output to FILE instead of stdout
    --verbose, -v       Enable debug logging
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from querycache import (  # noqa: E402
    EndpointRegistry,
    QueryCacheConfig,
    QueryClient,
    QuerySnapshot,
    define_endpoints,
)


def _products_api() -> EndpointRegistry:
    return define_endpoints(
        lambda build: {
            "getAllProducts": build.query(lambda: "products"),
            "getProduct": build.query(lambda product: f"products/search?q={product}"),
        }
    )


def _describe(snapshot: QuerySnapshot) -> str:
    if snapshot.is_error and snapshot.error is not None:
        return f"{snapshot.status:<8} {snapshot.error.kind}: {snapshot.error.message}"
    if isinstance(snapshot.data, dict) and "products" in snapshot.data:
        titles = [p.get("title", "?") for p in snapshot.data["products"][:3]]
        return f"{snapshot.status:<8} {len(snapshot.data['products'])} products, e.g. {titles}"
    return f"{snapshot.status:<8}"


def _watch(label: str, lines: list[str], json_mode: bool) -> Any:
    def _on_change(snapshot: QuerySnapshot) -> None:
        line = f"  [{label}] {_describe(snapshot)}"
        lines.append(line)
        if not json_mode:
            print(line)

    return _on_change


async def run(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.base_url:
        overrides["base_url"] = args.base_url
    config = QueryCacheConfig.from_env(**overrides)

    lines: list[str] = []
    async with QueryClient(_products_api(), config=config) as client:
        all_handle = client.subscribe("getAllProducts", None, _watch("getAllProducts", lines, args.json_mode))
        one_handle = client.subscribe("getProduct", args.product, _watch("getProduct", lines, args.json_mode))
        # A second observer on the same key joins the pending request.
        dup_handle = client.subscribe("getProduct", args.product, _watch("getProduct#2", lines, args.json_mode))

        all_products = await client.query("getAllProducts")
        product = await client.query("getProduct", args.product)

        cached = await client.query("getAllProducts")
        if not args.json_mode:
            print(f"\n  cache hit request_id={cached.request_id} (same as {all_products.request_id})")

        for handle in (all_handle, one_handle, dup_handle):
            client.unsubscribe(handle)

    return {
        "transitions": lines,
        "getAllProducts": all_products.model_dump(mode="json"),
        "getProduct": product.model_dump(mode="json"),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Fetch demo product endpoints through querycache.")
    parser.add_argument("--product", default="iphone", help="Search term for getProduct")
    parser.add_argument("--base-url", help="API base URL")
    parser.add_argument("--json", action="store_true", dest="json_mode", help="Output machine-readable JSON")
    parser.add_argument("--output", "-o", help="Write JSON output to FILE instead of stdout")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.WARNING)

    result = asyncio.run(run(args))

    if args.json_mode or args.output:
        payload = json.dumps(result, indent=2, default=str, ensure_ascii=False)
        if args.output:
            Path(args.output).write_text(payload, encoding="utf-8")
            print(f"JSON written to {args.output}", file=sys.stderr)
        else:
            print(payload)


if __name__ == "__main__":
    main()
