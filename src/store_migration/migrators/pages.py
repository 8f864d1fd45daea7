"""Online store page migrator."""

from collections.abc import AsyncIterator
from typing import Any

from store_migration.migrators.base import ResourceMigrator, pick
from store_migration.resources import ModuleName

PAGE_FIELDS = (
    "title",
    "body_html",
    "handle",
    "published",
    "author",
    "template_suffix",
)


class PageMigrator(ResourceMigrator):
    """Copies pages and their metafields."""

    MODULE = ModuleName.PAGES
    NOUN = "page"
    NOUN_PLURAL = "pages"

    async def discover_total(self) -> int:
        return await self.source.get_count("pages/count.json")

    def iter_items(self) -> AsyncIterator[dict[str, Any]]:
        return self.iter_numbered_pages("pages.json", "pages")

    def transform(self, item: dict[str, Any]) -> dict[str, Any]:
        return {"page": pick(item, PAGE_FIELDS)}

    async def create(self, item: dict[str, Any], payload: dict[str, Any]) -> str:
        created = await self.destination.rest_call("POST", "pages.json", body=payload)
        return str(created["page"]["id"])

    async def after_create(self, item: dict[str, Any], destination_id: str) -> None:
        await self.copy_metafields("pages", item, destination_id)
