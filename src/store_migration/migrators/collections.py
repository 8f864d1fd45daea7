"""Collection migrator (custom and smart collections)."""

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from store_migration.client.exceptions import StoreMigrationError
from store_migration.migrators.base import ResourceMigrator, pick
from store_migration.resources import ModuleName

CUSTOM = "custom"
SMART = "smart"

CUSTOM_FIELDS = ("title", "body_html", "handle", "published", "sort_order")
SMART_FIELDS = ("title", "body_html", "handle", "published", "rules", "disjunctive", "sort_order")


@dataclass(frozen=True)
class CollectionItem:
    """A source collection tagged with its kind."""

    kind: str
    data: dict[str, Any]

    @property
    def resource(self) -> str:
        return f"{self.kind}_collection"


class CollectionMigrator(ResourceMigrator):
    """Copies custom and smart collections.

    Custom collection membership (collects) is translated through the
    product mapping of this migration, built from completed product
    checkpoints before the first collection is processed. Products that were
    not migrated are reported and left out.
    """

    MODULE = ModuleName.COLLECTIONS
    NOUN = "collection"
    NOUN_PLURAL = "collections"

    def __init__(self, context):
        super().__init__(context)
        self._items: list[CollectionItem] = []
        self.product_map: dict[str, str] = {}

    async def discover_total(self) -> int:
        self.product_map = self.checkpoints.completed_mapping(
            self.migration_id, ModuleName.PRODUCTS.value
        )
        self.summary.details["unmapped_products"] = 0
        self.summary.details["collects_copied"] = 0

        custom = await self.source.get_all_pages(
            "custom_collections.json", "custom_collections", limit=self.page_size
        )
        smart = await self.source.get_all_pages(
            "smart_collections.json", "smart_collections", limit=self.page_size
        )
        self._items = [CollectionItem(CUSTOM, c) for c in custom]
        self._items.extend(CollectionItem(SMART, c) for c in smart)
        return len(self._items)

    async def iter_items(self) -> AsyncIterator[CollectionItem]:
        for item in self._items:
            yield item

    def source_id(self, item: CollectionItem) -> str:
        return f"{item.kind}_{item.data['id']}"

    def label(self, item: CollectionItem) -> str:
        return f"{item.data.get('title') or item.data['id']} ({item.kind})"

    def transform(self, item: CollectionItem) -> dict[str, Any]:
        collection = pick(item.data, CUSTOM_FIELDS if item.kind == CUSTOM else SMART_FIELDS)
        image = item.data.get("image")
        if image:
            collection["image"] = pick(image, ("src", "alt"))
        return {item.resource: collection}

    async def create(self, item: CollectionItem, payload: dict[str, Any]) -> str:
        created = await self.destination.rest_call(
            "POST", f"{item.resource}s.json", body=payload
        )
        return str(created[item.resource]["id"])

    async def after_create(self, item: CollectionItem, destination_id: str) -> None:
        if item.kind == CUSTOM:
            await self.copy_collects(item, destination_id)

    async def copy_collects(self, item: CollectionItem, destination_id: str) -> None:
        """Recreate product membership of a custom collection."""
        try:
            collects = await self.source.get_all_pages(
                "collects.json", "collects", params={"collection_id": item.data["id"]}
            )
        except StoreMigrationError as e:
            await self.log.warning(
                f"Failed to read products of collection: {self.label(item)}",
                module=self.module,
                error=str(e),
            )
            return

        for collect in collects:
            product_id = str(collect.get("product_id"))
            destination_product_id = self.product_map.get(product_id)
            if destination_product_id is None:
                self.summary.details["unmapped_products"] += 1
                await self.log.warning(
                    f"Product {product_id} was not migrated; left out of collection {self.label(item)}",
                    module=self.module,
                    product_id=product_id,
                )
                continue

            try:
                await self.destination.rest_call(
                    "POST",
                    "collects.json",
                    body={
                        "collect": {
                            "product_id": int(destination_product_id),
                            "collection_id": int(destination_id),
                        }
                    },
                )
                self.summary.details["collects_copied"] += 1
            except StoreMigrationError as e:
                await self.log.warning(
                    "Failed to add product to collection",
                    module=self.module,
                    collection=self.label(item),
                    product_id=product_id,
                    error=str(e),
                )
