"""Rate-limited client for the store Admin API.

Every outbound call from a migration funnels through one StoreClient per
store. The client paces REST and GraphQL traffic with separate limiters,
retries throttled calls (and only throttled calls) after the server-advised
delay, and applies a preventive pause when the GraphQL cost budget runs low.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx

from store_migration.client.base_client import BaseAPIClient
from store_migration.client.credentials import StoreCredential
from store_migration.client.exceptions import GraphQLError, RateLimitError, StoreMigrationError
from store_migration.client.rate_limiter import TokenBucketLimiter
from store_migration.config import RateLimitConfig
from store_migration.utils.logging import get_logger
from store_migration.utils.retry import throttle_retrying

logger = get_logger(__name__)

MAX_PAGE_SIZE = 250


class StoreClient(BaseAPIClient):
    """Client for one store's REST and GraphQL Admin API."""

    def __init__(
        self,
        credential: StoreCredential,
        rate_limits: RateLimitConfig | None = None,
        log_payloads: bool = False,
        max_payload_size: int = 10000,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize store client.

        Args:
            credential: Store URL, access token and API version
            rate_limits: Limiter and throttle settings
            log_payloads: Enable request/response payload logging
            max_payload_size: Maximum payload size to log before truncation
            transport: Optional httpx transport (used by tests to fake the API)
            sleep: Async sleep used for the preventive GraphQL pause
        """
        super().__init__(
            base_url=credential.base_url,
            access_token=credential.access_token,
            timeout=credential.timeout,
            log_payloads=log_payloads,
            max_payload_size=max_payload_size,
            transport=transport,
        )
        self.store = credential.store_url
        self.rate_limits = rate_limits or RateLimitConfig()
        self._sleep = sleep

        limits = self.rate_limits
        self.rest_limiter = TokenBucketLimiter(
            capacity=limits.rest_capacity,
            interval=limits.rest_interval,
            min_spacing=limits.rest_min_spacing,
            max_concurrent=limits.max_concurrent,
            name=f"rest:{self.store}",
        )
        self.graphql_limiter = TokenBucketLimiter(
            capacity=limits.graphql_capacity,
            interval=limits.graphql_interval,
            min_spacing=limits.graphql_min_spacing,
            max_concurrent=limits.max_concurrent,
            name=f"graphql:{self.store}",
        )

        logger.info("store_client_initialized", store=self.store)

    async def _throttled(self, limiter: TokenBucketLimiter, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``call`` through ``limiter``, retrying while the API throttles."""
        try:
            async for attempt in throttle_retrying(
                max_attempts=self.rate_limits.throttle_max_attempts,
                default_retry_after=self.rate_limits.default_retry_after,
            ):
                with attempt:
                    return await limiter.schedule(call)
        except RateLimitError:
            logger.error(
                "rate_limit_retry_exhausted",
                store=self.store,
                max_attempts=self.rate_limits.throttle_max_attempts,
            )
            raise

    async def rest_response(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Issue a paced REST call and return the raw response."""

        async def call() -> httpx.Response:
            return await self.send(method, path, params=params, json_data=body)

        return await self._throttled(self.rest_limiter, call)

    async def rest_call(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Issue a paced REST call.

        Args:
            method: HTTP method
            path: Path relative to the versioned API root, e.g. ``products.json``
            body: JSON request body
            params: Query parameters

        Returns:
            Decoded JSON body (empty dict for an empty body)

        Raises:
            RateLimitError: If the call is still throttled after all attempts
            APIError: For any other error response, without retry
            NetworkError: For transport failures, without retry
        """
        response = await self.rest_response(method, path, body=body, params=params)
        return response.json() if response.text else {}

    async def get(
        self, endpoint: str, params: dict[str, Any] | None = None, **kwargs: Any
    ) -> dict[str, Any]:
        """Paced GET."""
        return await self.rest_call("GET", endpoint, params=params)

    async def post(
        self,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Paced POST."""
        return await self.rest_call("POST", endpoint, body=json_data, params=params)

    async def put(
        self,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Paced PUT."""
        return await self.rest_call("PUT", endpoint, body=json_data, params=params)

    async def delete(
        self, endpoint: str, params: dict[str, Any] | None = None, **kwargs: Any
    ) -> dict[str, Any]:
        """Paced DELETE."""
        return await self.rest_call("DELETE", endpoint, params=params)

    async def graphql_call(
        self, document: str, variables: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Issue a paced GraphQL call.

        Args:
            document: GraphQL query or mutation
            variables: Query variables

        Returns:
            The ``data`` member of the response

        Raises:
            GraphQLError: If the response carries errors
            RateLimitError: If the call is still throttled after all attempts
        """
        payload = {"query": document, "variables": variables or {}}

        async def call() -> dict[str, Any]:
            response = await self.send("POST", "graphql.json", json_data=payload)
            body = response.json() if response.text else {}
            errors = body.get("errors")
            if errors:
                if _is_throttled(errors):
                    raise RateLimitError("GraphQL query throttled", status_code=200, response=body)
                raise GraphQLError(f"GraphQL errors: {_error_messages(errors)}", errors=errors)
            return body

        body = await self._throttled(self.graphql_limiter, call)

        available = _currently_available(body)
        if available is not None and available < self.rate_limits.graphql_low_budget_threshold:
            logger.info(
                "graphql_budget_low",
                store=self.store,
                currently_available=available,
                pause_seconds=self.rate_limits.graphql_low_budget_pause,
            )
            await self._sleep(self.rate_limits.graphql_low_budget_pause)

        return body.get("data") or {}

    async def rest_page(
        self, path: str, params: dict[str, Any] | None = None
    ) -> tuple[dict[str, Any], str | None]:
        """Fetch one page of a cursor-paginated REST collection.

        Returns:
            Tuple of the decoded body and the ``page_info`` cursor of the next
            page (None on the last page)
        """
        response = await self.rest_response("GET", path, params=params)
        data = response.json() if response.text else {}
        return data, _next_page_info(response)

    async def iter_pages(
        self,
        path: str,
        resource_key: str,
        params: dict[str, Any] | None = None,
        limit: int = MAX_PAGE_SIZE,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield pages of a cursor-paginated REST collection in order.

        The next page is only requested once the caller resumes iteration.
        """
        query: dict[str, Any] = {**(params or {}), "limit": limit}
        while True:
            data, page_info = await self.rest_page(path, query)
            yield data.get(resource_key, [])
            if not page_info:
                break
            # page_info requests only accept limit alongside the cursor
            query = {"limit": limit, "page_info": page_info}

    async def get_all_pages(
        self,
        path: str,
        resource_key: str,
        params: dict[str, Any] | None = None,
        limit: int = MAX_PAGE_SIZE,
    ) -> list[dict[str, Any]]:
        """Fetch every item of a cursor-paginated REST collection.

        Args:
            path: Collection path, e.g. ``custom_collections.json``
            resource_key: Key of the item list in the body, e.g. ``custom_collections``
            params: Extra query parameters for the first page
            limit: Page size

        Returns:
            All items across pages
        """
        items: list[dict[str, Any]] = []
        async for page in self.iter_pages(path, resource_key, params=params, limit=limit):
            items.extend(page)

        logger.debug("get_all_pages_completed", store=self.store, path=path, total=len(items))
        return items

    async def get_count(self, path: str, params: dict[str, Any] | None = None) -> int:
        """Read a ``count.json`` endpoint."""
        data = await self.rest_call("GET", path, params=params)
        return int(data.get("count", 0))

    async def test_connection(self) -> dict[str, Any]:
        """Check that the store is reachable with the configured token.

        Returns:
            ``{"success": True, "shop": name}`` or ``{"success": False, "error": message}``
        """
        try:
            data = await self.rest_call("GET", "shop.json")
        except StoreMigrationError as e:
            logger.warning("store_connection_failed", store=self.store, error=str(e))
            return {"success": False, "error": str(e)}

        shop = data.get("shop") or {}
        logger.info("store_connection_validated", store=self.store)
        return {"success": True, "shop": shop.get("name"), "error": None}


def _next_page_info(response: httpx.Response) -> str | None:
    next_link = response.links.get("next")
    if not next_link or not next_link.get("url"):
        return None
    values = parse_qs(urlparse(next_link["url"]).query).get("page_info")
    return values[0] if values else None


def _currently_available(body: dict[str, Any]) -> float | None:
    cost = (body.get("extensions") or {}).get("cost") or {}
    return (cost.get("throttleStatus") or {}).get("currentlyAvailable")


def _is_throttled(errors: list[Any]) -> bool:
    return any(
        isinstance(e, dict) and (e.get("extensions") or {}).get("code") == "THROTTLED"
        for e in errors
    )


def _error_messages(errors: list[Any]) -> str:
    return "; ".join(e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errors)


def create_store_client(
    credential: StoreCredential,
    rate_limits: RateLimitConfig | None = None,
    log_payloads: bool = False,
    max_payload_size: int = 10000,
) -> StoreClient:
    """Default client factory used by the scheduler and the CLI."""
    return StoreClient(
        credential,
        rate_limits=rate_limits,
        log_payloads=log_payloads,
        max_payload_size=max_payload_size,
    )
