"""Shared fixtures: an in-memory store Admin API and a per-test state database."""

import json
import re
from collections import defaultdict
from itertools import count
from typing import Any

import httpx
import pytest
import pytest_asyncio

from store_migration.client.credentials import StoreCredential
from store_migration.client.store_client import StoreClient
from store_migration.config import (
    MigrationConfig,
    MigratorConfig,
    RateLimitConfig,
    SchedulerConfig,
    StateConfig,
    StoreConfig,
)
from store_migration.migration.cancellation import CancellationToken
from store_migration.migration.checkpoint import CheckpointStore
from store_migration.migration.state import MigrationState
from store_migration.migrators.base import MigratorContext
from store_migration.reporting.events import LocalEventBus
from store_migration.reporting.migration_log import MigrationLogger
from store_migration.reporting.progress import ProgressAggregator

API_PREFIX = "/admin/api/2024-01/"

SOURCE_DOMAIN = "source-shop.myshopify.com"
DESTINATION_DOMAIN = "destination-shop.myshopify.com"

FAST_LIMITS = RateLimitConfig(
    rest_capacity=1000,
    rest_min_spacing=0,
    graphql_capacity=1000,
    graphql_min_spacing=0,
    default_retry_after=0,
    graphql_low_budget_pause=0,
)

SINGULAR = {
    "products.json": "product",
    "pages.json": "page",
    "custom_collections.json": "custom_collection",
    "smart_collections.json": "smart_collection",
    "collects.json": "collect",
    "themes.json": "theme",
}

METAFIELDS_PATH = re.compile(r"^(products|pages)/(\d+)/metafields\.json$")
ASSETS_PATH = re.compile(r"^themes/(\d+)/assets\.json$")


def make_product(product_id: int, title: str, **extra: Any) -> dict[str, Any]:
    product = {
        "id": product_id,
        "title": title,
        "body_html": f"<p>{title}</p>",
        "vendor": "Acme",
        "product_type": "Widget",
        "tags": "sale",
        "status": "active",
        "handle": title.lower().replace(" ", "-"),
        "created_at": "2024-01-01T00:00:00Z",
        "variants": [
            {
                "id": product_id * 10,
                "product_id": product_id,
                "option1": "Default",
                "price": "19.99",
                "sku": f"SKU-{product_id}",
                "inventory_quantity": 4,
                "barcode": None,
            }
        ],
        "options": [{"id": product_id * 100, "name": "Title", "position": 1, "values": ["Default"]}],
        "images": [{"id": product_id * 1000, "src": f"https://cdn.example.com/{product_id}.png"}],
    }
    product.update(extra)
    return product


class FakeStore:
    """A store Admin API kept in memory and served through ``httpx.MockTransport``.

    ``created`` records every payload the client wrote, keyed by resource
    name. ``overrides`` replaces a route with a callable taking the request.
    """

    def __init__(self, domain: str, name: str = "Test Shop"):
        self.domain = domain
        self.name = name
        self.products: list[dict[str, Any]] = []
        self.pages: list[dict[str, Any]] = []
        self.custom_collections: list[dict[str, Any]] = []
        self.smart_collections: list[dict[str, Any]] = []
        self.collects: list[dict[str, Any]] = []
        self.themes: list[dict[str, Any]] = []
        self.assets: dict[int, list[dict[str, Any]]] = {}
        self.files: list[dict[str, Any]] = []
        self.downloads: dict[str, bytes] = {}

        self.fail_create: set[str] = set()
        self.fail_assets: set[str] = set()
        self.overrides: dict[tuple[str, str], Any] = {}

        self.created: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.requests: list[tuple[str, str, dict[str, str]]] = []
        self._ids = count(9000)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, method: str, path: str) -> int:
        return sum(1 for m, p, _ in self.requests if m == method and p == path)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if not request.url.path.startswith(API_PREFIX):
            content = self.downloads.get(str(request.url))
            if content is None:
                return httpx.Response(404)
            return httpx.Response(200, content=content)

        path = request.url.path[len(API_PREFIX):]
        params = dict(request.url.params)
        self.requests.append((request.method, path, params))

        override = self.overrides.get((request.method, path))
        if override is not None:
            return override(request)

        body = json.loads(request.content) if request.content else {}
        return self.route(request.method, path, params, body)

    def route(self, method: str, path: str, params: dict[str, str], body: dict[str, Any]) -> httpx.Response:
        if method == "GET" and path == "shop.json":
            return httpx.Response(200, json={"shop": {"name": self.name, "domain": self.domain}})

        if method == "GET" and path == "products/count.json":
            return httpx.Response(200, json={"count": len(self.products)})
        if method == "GET" and path == "pages/count.json":
            return httpx.Response(200, json={"count": len(self.pages)})
        if method == "GET" and path in ("products.json", "pages.json"):
            items = self.products if path == "products.json" else self.pages
            limit = int(params.get("limit", 50))
            page = int(params.get("page", 1))
            key = path.removesuffix(".json")
            return httpx.Response(200, json={key: items[(page - 1) * limit : page * limit]})

        if method == "GET" and path == "custom_collections.json":
            return httpx.Response(200, json={"custom_collections": self.custom_collections})
        if method == "GET" and path == "smart_collections.json":
            return httpx.Response(200, json={"smart_collections": self.smart_collections})
        if method == "GET" and path == "collects.json":
            collection_id = int(params["collection_id"])
            return httpx.Response(
                200,
                json={"collects": [c for c in self.collects if c["collection_id"] == collection_id]},
            )
        if method == "GET" and path == "themes.json":
            return httpx.Response(200, json={"themes": self.themes})

        if method == "POST" and path in SINGULAR:
            return self.create(SINGULAR[path], body[SINGULAR[path]])

        match = METAFIELDS_PATH.match(path)
        if method == "POST" and match:
            metafield = {**body["metafield"], "owner": match.group(1), "owner_id": match.group(2)}
            self.created["metafield"].append(metafield)
            return httpx.Response(201, json={"metafield": {**metafield, "id": next(self._ids)}})

        match = ASSETS_PATH.match(path)
        if match:
            return self.theme_assets(method, int(match.group(1)), params, body)

        if method == "POST" and path == "graphql.json":
            return self.graphql(body)

        return httpx.Response(404, json={"errors": "Not Found"})

    def create(self, resource: str, payload: dict[str, Any]) -> httpx.Response:
        if payload.get("title") in self.fail_create:
            return httpx.Response(422, json={"errors": {"title": ["is invalid"]}})
        self.created[resource].append(payload)
        return httpx.Response(201, json={resource: {**payload, "id": next(self._ids)}})

    def theme_assets(
        self, method: str, theme_id: int, params: dict[str, str], body: dict[str, Any]
    ) -> httpx.Response:
        assets = self.assets.get(theme_id, [])
        if method == "GET" and "asset[key]" in params:
            asset = next((a for a in assets if a["key"] == params["asset[key]"]), None)
            if asset is None:
                return httpx.Response(404, json={"errors": "Not Found"})
            return httpx.Response(200, json={"asset": asset})
        if method == "GET":
            return httpx.Response(200, json={"assets": [{"key": a["key"]} for a in assets]})
        if method == "PUT":
            asset = body["asset"]
            if asset["key"] in self.fail_assets:
                return httpx.Response(422, json={"errors": {"asset": ["is invalid"]}})
            self.created["asset"].append({**asset, "theme_id": theme_id})
            return httpx.Response(200, json={"asset": asset})
        return httpx.Response(405)

    def graphql(self, body: dict[str, Any]) -> httpx.Response:
        variables = body.get("variables") or {}
        if "fileCreate" in body["query"]:
            created = []
            for file_input in variables["files"]:
                self.created["file"].append(file_input)
                created.append({"id": f"gid://shopify/MediaImage/{next(self._ids)}", "alt": file_input.get("alt")})
            return httpx.Response(200, json={"data": {"fileCreate": {"files": created, "userErrors": []}}})

        start = int(variables.get("after") or 0)
        first = int(variables.get("first") or 50)
        chunk = self.files[start : start + first]
        has_next = start + first < len(self.files)
        return httpx.Response(
            200,
            json={
                "data": {
                    "files": {
                        "edges": [{"node": node} for node in chunk],
                        "pageInfo": {
                            "hasNextPage": has_next,
                            "endCursor": str(start + first) if has_next else None,
                        },
                    }
                }
            },
        )


def make_client(store: FakeStore, rate_limits: RateLimitConfig | None = None, **kwargs: Any) -> StoreClient:
    return StoreClient(
        StoreCredential(store_url=store.domain, access_token=f"shpat_{store.domain}"),
        rate_limits=rate_limits or FAST_LIMITS,
        transport=store.transport(),
        **kwargs,
    )


@pytest.fixture
def source_store() -> FakeStore:
    return FakeStore(SOURCE_DOMAIN, name="Source Shop")


@pytest.fixture
def destination_store() -> FakeStore:
    return FakeStore(DESTINATION_DOMAIN, name="Destination Shop")


@pytest.fixture
def state_config(tmp_path) -> StateConfig:
    return StateConfig(db_path=str(tmp_path / "state.db"))


@pytest.fixture
def state(state_config) -> MigrationState:
    return MigrationState(state_config)


@pytest.fixture
def checkpoints(state) -> CheckpointStore:
    return CheckpointStore(state)


@pytest.fixture
def config(state_config) -> MigrationConfig:
    return MigrationConfig(
        stores={
            "source": StoreConfig(url=SOURCE_DOMAIN, access_token="shpat_source"),
            "destination": StoreConfig(url=DESTINATION_DOMAIN, access_token="shpat_destination"),
        },
        rate_limits=FAST_LIMITS,
        scheduler=SchedulerConfig(concurrency=2, job_attempts=2, job_backoff_base=0),
        state=state_config,
    )


@pytest_asyncio.fixture
async def clients(source_store, destination_store):
    source = make_client(source_store)
    destination = make_client(destination_store)
    yield source, destination
    await source.close()
    await destination.close()


@pytest.fixture
def bus() -> LocalEventBus:
    return LocalEventBus()


@pytest.fixture
def make_context(state, checkpoints, clients, bus):
    """Build a MigratorContext for a new migration of the given modules."""

    def _make(modules: list[str], migrator_config: MigratorConfig | None = None, migration_id: str | None = None):
        if migration_id is None:
            migration_id = state.create_migration("source", "destination", modules)
        source, destination = clients
        return MigratorContext(
            migration_id=migration_id,
            source=source,
            destination=destination,
            checkpoints=checkpoints,
            progress=ProgressAggregator(migration_id, state, bus),
            log=MigrationLogger(migration_id, state, bus),
            token=CancellationToken(migration_id, state),
            config=migrator_config or MigratorConfig(),
        )

    return _make
