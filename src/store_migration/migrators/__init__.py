"""Module migrators and their lookup table."""

from store_migration.migrators.base import (
    MigrationSummary,
    MigratorContext,
    ResourceMigrator,
)
from store_migration.migrators.collections import CollectionMigrator
from store_migration.migrators.media import MediaMigrator
from store_migration.migrators.pages import PageMigrator
from store_migration.migrators.products import ProductMigrator
from store_migration.migrators.theme import ThemeMigrator
from store_migration.resources import ModuleName, parse_module

MIGRATORS: dict[ModuleName, type[ResourceMigrator]] = {
    ModuleName.THEME: ThemeMigrator,
    ModuleName.PRODUCTS: ProductMigrator,
    ModuleName.COLLECTIONS: CollectionMigrator,
    ModuleName.PAGES: PageMigrator,
    ModuleName.MEDIA: MediaMigrator,
}


def create_migrator(module: str | ModuleName, context: MigratorContext) -> ResourceMigrator:
    """Instantiate the migrator of a module.

    Raises:
        UnknownModuleError: If the module is not supported
    """
    return MIGRATORS[parse_module(module)](context)


__all__ = [
    "MIGRATORS",
    "create_migrator",
    "MigratorContext",
    "MigrationSummary",
    "ResourceMigrator",
    "ThemeMigrator",
    "ProductMigrator",
    "CollectionMigrator",
    "PageMigrator",
    "MediaMigrator",
]
