"""Product migrator."""

from collections.abc import AsyncIterator
from typing import Any

from store_migration.migrators.base import ResourceMigrator, pick
from store_migration.resources import ModuleName

PRODUCT_FIELDS = (
    "title",
    "body_html",
    "vendor",
    "product_type",
    "tags",
    "status",
)

VARIANT_FIELDS = (
    "option1",
    "option2",
    "option3",
    "price",
    "compare_at_price",
    "sku",
    "barcode",
    "weight",
    "weight_unit",
    "inventory_management",
    "inventory_policy",
    "requires_shipping",
    "taxable",
)

OPTION_FIELDS = ("name", "position", "values")

IMAGE_FIELDS = ("src", "alt")


class ProductMigrator(ResourceMigrator):
    """Copies products with their variants, options, images and metafields.

    Source products are read with page-number pagination until the count
    reported by ``products/count.json`` has been processed.
    """

    MODULE = ModuleName.PRODUCTS
    NOUN = "product"
    NOUN_PLURAL = "products"

    async def discover_total(self) -> int:
        return await self.source.get_count("products/count.json")

    def iter_items(self) -> AsyncIterator[dict[str, Any]]:
        return self.iter_numbered_pages("products.json", "products")

    def transform(self, item: dict[str, Any]) -> dict[str, Any]:
        product = pick(item, PRODUCT_FIELDS)
        product["variants"] = [pick(v, VARIANT_FIELDS) for v in item.get("variants") or []]
        if item.get("options"):
            product["options"] = [pick(o, OPTION_FIELDS) for o in item["options"]]
        product["images"] = [pick(img, IMAGE_FIELDS) for img in item.get("images") or []]
        return {"product": product}

    async def create(self, item: dict[str, Any], payload: dict[str, Any]) -> str:
        created = await self.destination.rest_call("POST", "products.json", body=payload)
        return str(created["product"]["id"])

    async def after_create(self, item: dict[str, Any], destination_id: str) -> None:
        await self.copy_metafields("products", item, destination_id)
