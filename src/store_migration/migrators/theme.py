"""Theme migrator."""

import base64
from collections.abc import AsyncIterator
from typing import Any

from store_migration.client.exceptions import (
    MigrationHalted,
    ModuleError,
    StateError,
    StoreMigrationError,
)
from store_migration.migrators.base import ResourceMigrator
from store_migration.reporting.progress import compute_percentage
from store_migration.resources import ModuleName


class ThemeMigrator(ResourceMigrator):
    """Copies the published (``main``) theme into a new unpublished theme.

    Progress is the share of assets processed, reported only when the rounded
    percentage changes, and forced to 100 when the asset loop ends. A failed
    asset is a warning, not an item failure. The destination theme is
    checkpointed under ``theme_<source id>`` so a resumed run uploads into
    the same theme.
    """

    MODULE = ModuleName.THEME
    NOUN = "theme"
    NOUN_PLURAL = "theme assets"

    def __init__(self, context):
        super().__init__(context)
        self.source_theme: dict[str, Any] = {}
        self.destination_theme_id: str | None = None
        self._assets: list[dict[str, Any]] = []
        self._last_percentage = -1

    async def discover_total(self) -> int:
        themes = (await self.source.rest_call("GET", "themes.json")).get("themes") or []
        main = next((t for t in themes if t.get("role") == "main"), None)
        if main is None:
            raise ModuleError("No active theme found in source store")

        self.source_theme = main
        await self.log.info(
            f"Found active theme: {main.get('name')} (ID: {main['id']})", module=self.module
        )

        data = await self.source.rest_call("GET", f"themes/{main['id']}/assets.json")
        self._assets = data.get("assets") or []
        self.destination_theme_id = await self.ensure_destination_theme()
        return len(self._assets)

    async def ensure_destination_theme(self) -> str:
        """Reuse the theme created by an earlier run, or create it."""
        checkpoint_id = f"theme_{self.source_theme['id']}"
        record = self.checkpoints.get(self.migration_id, self.module, checkpoint_id)
        if record is not None and record.is_migrated:
            await self.log.info(
                f"Reusing migrated theme with ID: {record.destination_id}", module=self.module
            )
            return record.destination_id

        created = await self.destination.rest_call(
            "POST",
            "themes.json",
            body={
                "theme": {
                    "name": f"{self.source_theme.get('name')} (Migrated)",
                    "role": "unpublished",
                }
            },
        )
        theme_id = str(created["theme"]["id"])
        self.checkpoints.upsert(self.migration_id, self.module, checkpoint_id, theme_id)
        await self.log.success(f"Created new theme with ID: {theme_id}", module=self.module)
        return theme_id

    async def iter_items(self) -> AsyncIterator[dict[str, Any]]:
        for asset in self._assets:
            yield asset

    def source_id(self, item: dict[str, Any]) -> str:
        return item["key"]

    def label(self, item: dict[str, Any]) -> str:
        return item["key"]

    async def process_item(self, item: dict[str, Any]) -> None:
        key = item["key"]
        try:
            detail = await self.source.rest_call(
                "GET",
                f"themes/{self.source_theme['id']}/assets.json",
                params={"asset[key]": key},
            )
            upload = await self.build_upload(detail.get("asset") or {"key": key})
            await self.destination.rest_call(
                "PUT", f"themes/{self.destination_theme_id}/assets.json", body=upload
            )
        except (MigrationHalted, StateError):
            raise
        except StoreMigrationError as e:
            await self.log.warning(
                f"Failed to migrate asset: {key}", module=self.module, error=str(e)
            )
            self.summary.processed += 1
            self.summary.failed += 1
            return

        self.summary.processed += 1
        self.summary.completed += 1

    async def build_upload(self, asset: dict[str, Any]) -> dict[str, Any]:
        """Asset body from its text value, attachment, or downloaded source."""
        upload: dict[str, Any] = {"key": asset["key"]}
        if asset.get("value") is not None:
            upload["value"] = asset["value"]
        elif asset.get("attachment"):
            upload["attachment"] = asset["attachment"]
        elif asset.get("src"):
            content = await self.source.fetch_binary(asset["src"])
            upload["attachment"] = base64.b64encode(content).decode("ascii")
        return {"asset": upload}

    async def report_progress(self) -> None:
        percentage = compute_percentage(self.summary.processed, self.summary.total)
        if percentage != self._last_percentage:
            self._last_percentage = percentage
            await self.progress.set_percentage(
                self.module, percentage, self.summary.processed, self.summary.total
            )

    async def finish(self) -> None:
        await self.progress.set_percentage(
            self.module, 100, self.summary.processed, self.summary.total
        )
        self.summary.details.update(
            {
                "theme_id": self.destination_theme_id,
                "theme_name": f"{self.source_theme.get('name')} (Migrated)",
                "assets_count": self.summary.completed,
            }
        )
