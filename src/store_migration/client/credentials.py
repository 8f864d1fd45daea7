"""Store credentials and their resolution.

Migrations only persist store references (names). The decrypted access token
is resolved at job time through a CredentialProvider and handed to the
client; it is never written to the state database or to logs.
"""

from dataclasses import dataclass, field
from typing import Protocol

from store_migration.client.exceptions import ConfigurationError
from store_migration.config import DEFAULT_API_VERSION, StoreConfig


@dataclass(frozen=True)
class StoreCredential:
    """Connection details for one store."""

    store_url: str
    access_token: str = field(repr=False)
    api_version: str = DEFAULT_API_VERSION
    timeout: int = 30

    @property
    def base_url(self) -> str:
        """Versioned Admin API base URL."""
        return f"https://{self.store_url}/admin/api/{self.api_version}"


class CredentialProvider(Protocol):
    """Resolves a store reference into a credential."""

    def resolve(self, store_ref: str) -> StoreCredential: ...


class ConfigCredentialProvider:
    """Resolve store references against the ``stores`` section of the config."""

    def __init__(self, stores: dict[str, StoreConfig]):
        self._stores = stores

    def resolve(self, store_ref: str) -> StoreCredential:
        """Look up a store by configured name, falling back to its domain.

        Raises:
            ConfigurationError: If no configured store matches
        """
        store = self._stores.get(store_ref)
        if store is None:
            store = next((s for s in self._stores.values() if s.url == store_ref), None)
        if store is None:
            known = ", ".join(sorted(self._stores)) or "none"
            raise ConfigurationError(f"Unknown store '{store_ref}' (configured stores: {known})")

        return StoreCredential(
            store_url=store.url,
            access_token=store.access_token,
            api_version=store.api_version,
            timeout=store.timeout,
        )
