"""Central module definitions - single source of truth.

This module provides the closed set of migration modules supported by the
tool. CLI option parsing, the migrator lookup table and the report builder
all import from here rather than defining their own lists.
"""

from dataclasses import dataclass
from enum import Enum

from store_migration.client.exceptions import UnknownModuleError


class ModuleName(str, Enum):
    """A category of store resource migrated by its own pipeline."""

    THEME = "theme"
    PRODUCTS = "products"
    COLLECTIONS = "collections"
    PAGES = "pages"
    MEDIA = "media"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ModuleInfo:
    """Metadata for a migration module."""

    name: ModuleName
    description: str
    display_order: int


MODULE_REGISTRY: dict[ModuleName, ModuleInfo] = {
    ModuleName.THEME: ModuleInfo(
        name=ModuleName.THEME,
        description="Active theme and its assets",
        display_order=10,
    ),
    ModuleName.PRODUCTS: ModuleInfo(
        name=ModuleName.PRODUCTS,
        description="Products with variants, images and metafields",
        display_order=20,
    ),
    # Collection membership is translated through completed product checkpoints
    ModuleName.COLLECTIONS: ModuleInfo(
        name=ModuleName.COLLECTIONS,
        description="Custom and smart collections",
        display_order=30,
    ),
    ModuleName.PAGES: ModuleInfo(
        name=ModuleName.PAGES,
        description="Online store pages with metafields",
        display_order=40,
    ),
    ModuleName.MEDIA: ModuleInfo(
        name=ModuleName.MEDIA,
        description="Files (images, videos, generic files)",
        display_order=50,
    ),
}


def parse_module(value: str | ModuleName) -> ModuleName:
    """Convert a module name into the enum.

    Args:
        value: Module name such as "products"

    Returns:
        ModuleName member

    Raises:
        UnknownModuleError: If the name is not a supported module
    """
    if isinstance(value, ModuleName):
        return value
    try:
        return ModuleName(str(value).strip().lower())
    except ValueError as e:
        raise UnknownModuleError(
            f"Unknown module: {value!r}. Supported modules: {', '.join(get_all_modules())}"
        ) from e


def get_all_modules() -> list[str]:
    """Get all module names in display order.

    Returns:
        List of module names
    """
    return [
        info.name.value
        for info in sorted(MODULE_REGISTRY.values(), key=lambda i: i.display_order)
    ]


def normalize_selection(selection: dict[str, bool] | list[str] | tuple[str, ...]) -> dict[str, bool]:
    """Normalize a module selection into the ``{module: bool}`` mapping stored on a migration.

    Args:
        selection: Either a mapping of module name to flag or an iterable of selected names

    Returns:
        Mapping with every known module present

    Raises:
        UnknownModuleError: If any name is not a supported module
    """
    if isinstance(selection, dict):
        chosen = {parse_module(k).value for k, v in selection.items() if v}
    else:
        chosen = {parse_module(k).value for k in selection}
    return {name: name in chosen for name in get_all_modules()}


def selected_modules(selection: dict[str, bool]) -> list[ModuleName]:
    """Selected modules of a migration, in display order."""
    return [ModuleName(name) for name in get_all_modules() if selection.get(name)]
