"""Media (Files) migrator using the GraphQL Admin API."""

from collections.abc import AsyncIterator
from typing import Any

from store_migration.client.exceptions import MigrationError, StoreMigrationError
from store_migration.migrators.base import ResourceMigrator
from store_migration.resources import ModuleName

FILES_QUERY = """
query files($first: Int!, $after: String) {
  files(first: $first, after: $after) {
    edges {
      node {
        __typename
        ... on MediaImage {
          id
          alt
          fileStatus
          image {
            url
            originalSrc
          }
        }
        ... on GenericFile {
          id
          alt
          url
          fileStatus
        }
        ... on Video {
          id
          alt
          fileStatus
          sources {
            url
          }
        }
      }
    }
    pageInfo {
      hasNextPage
      endCursor
    }
  }
}
"""

FILE_CREATE_MUTATION = """
mutation fileCreate($files: [FileCreateInput!]!) {
  fileCreate(files: $files) {
    files {
      id
      alt
      createdAt
    }
    userErrors {
      field
      message
    }
  }
}
"""

# GraphQL node type -> FileContentType
CONTENT_TYPES = {
    "MediaImage": "IMAGE",
    "Video": "VIDEO",
    "GenericFile": "FILE",
}


def gid_tail(gid: str) -> str:
    """Last path segment of a global id, e.g. ``gid://shopify/MediaImage/42`` -> ``42``."""
    return str(gid).rsplit("/", 1)[-1]


def best_url(node: dict[str, Any]) -> str | None:
    """Original image source, then generic url, then the first video source."""
    image = node.get("image") or {}
    if image.get("originalSrc"):
        return image["originalSrc"]
    if image.get("url"):
        return image["url"]
    if node.get("url"):
        return node["url"]
    sources = node.get("sources") or []
    if sources and sources[0].get("url"):
        return sources[0]["url"]
    return None


class MediaMigrator(ResourceMigrator):
    """Copies store files by URL through ``fileCreate``.

    Files are discovered with the cursor-paginated ``files`` connection. A
    failing query is logged as a warning and the files found so far are
    migrated; an empty store is not an error.
    """

    MODULE = ModuleName.MEDIA
    NOUN = "media file"
    NOUN_PLURAL = "media files"

    def __init__(self, context):
        super().__init__(context)
        self._files: list[dict[str, Any]] = []

    async def discover_total(self) -> int:
        self._files = await self.list_files()
        return len(self._files)

    async def list_files(self) -> list[dict[str, Any]]:
        files: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            try:
                data = await self.source.graphql_call(
                    FILES_QUERY, {"first": self.page_size, "after": cursor}
                )
            except StoreMigrationError as e:
                await self.log.warning(
                    "Files query failed; continuing with the files found so far",
                    module=self.module,
                    found=len(files),
                    error=str(e),
                )
                break

            connection = data.get("files") or {}
            files.extend(edge["node"] for edge in connection.get("edges") or [] if edge.get("node"))
            page_info = connection.get("pageInfo") or {}
            if not page_info.get("hasNextPage") or not page_info.get("endCursor"):
                break
            cursor = page_info["endCursor"]
        return files

    async def iter_items(self) -> AsyncIterator[dict[str, Any]]:
        for node in self._files:
            yield node

    def source_id(self, item: dict[str, Any]) -> str:
        return gid_tail(item["id"])

    def label(self, item: dict[str, Any]) -> str:
        return self.source_id(item)

    async def process_item(self, item: dict[str, Any]) -> None:
        if best_url(item) is None:
            await self.log.warning(
                f"No URL found for file: {self.source_id(item)}", module=self.module
            )
            self.summary.processed += 1
            self.summary.skipped += 1
            return
        await super().process_item(item)

    def transform(self, item: dict[str, Any]) -> dict[str, Any]:
        url = best_url(item)
        filename = url.rsplit("/", 1)[-1].split("?", 1)[0]
        return {
            "files": [
                {
                    "alt": item.get("alt") or filename,
                    "contentType": CONTENT_TYPES.get(item.get("__typename"), "FILE"),
                    "originalSource": url,
                }
            ]
        }

    async def create(self, item: dict[str, Any], payload: dict[str, Any]) -> str:
        data = await self.destination.graphql_call(FILE_CREATE_MUTATION, payload)
        result = data.get("fileCreate") or {}

        user_errors = result.get("userErrors") or []
        if user_errors:
            messages = "; ".join(e.get("message", "") for e in user_errors)
            raise MigrationError(f"fileCreate rejected the file: {messages}")

        created = result.get("files") or []
        if not created:
            raise MigrationError("fileCreate returned no file")
        return gid_tail(created[0]["id"])
