"""Base HTTP client for Store Bridge.

This module provides a base async HTTP client with connection pooling,
request/response logging and mapping of error responses to exceptions.
Pacing and throttle retries are layered on top by StoreClient.
"""

import time
from typing import Any
from urllib.parse import urljoin

import httpx

from store_migration.client.exceptions import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
    ValidationError,
)
from store_migration.utils.logging import (
    get_logger,
    log_api_request,
    sanitize_payload,
    should_log_payloads,
    truncate_payload,
)

logger = get_logger(__name__)

AUTH_HEADER = "X-Shopify-Access-Token"


class BaseAPIClient:
    """Base async HTTP client for the store Admin API.

    This client provides:
    - Connection pooling
    - Request/response logging
    - Proper error handling and exception mapping
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        timeout: int = 30,
        max_connections: int | None = None,
        max_keepalive_connections: int | None = None,
        log_payloads: bool = False,
        max_payload_size: int = 10000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize base API client.

        Args:
            base_url: Base URL for API requests
            access_token: Admin API access token
            timeout: Request timeout in seconds
            max_connections: Maximum number of connections in pool (default: 10)
            max_keepalive_connections: Maximum keep-alive connections (default: 5)
            log_payloads: Enable request/response payload logging at DEBUG level
            max_payload_size: Maximum payload size (chars) to log before truncation
            transport: Optional httpx transport (used by tests to fake the API)
        """
        self.base_url = base_url.rstrip("/")
        self._access_token = access_token

        self.log_payloads = log_payloads
        self.max_payload_size = max_payload_size

        if max_connections is None:
            max_connections = 10
        if max_keepalive_connections is None:
            max_keepalive_connections = 5

        self.client = httpx.AsyncClient(
            headers=self._build_headers(),
            timeout=httpx.Timeout(timeout, connect=10.0),
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_keepalive_connections,
            ),
            follow_redirects=True,
            transport=transport,
        )

        logger.debug("client_initialized", base_url=self.base_url, max_connections=max_connections)

    def _build_headers(self) -> dict[str, str]:
        """Build the default HTTP headers.

        Returns:
            Dictionary of HTTP headers
        """
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _auth_headers(self) -> dict[str, str]:
        # Sent per request so that asset downloads from CDNs never carry the token
        return {AUTH_HEADER: self._access_token}

    def _build_url(self, endpoint: str) -> str:
        """Build full URL from endpoint.

        Args:
            endpoint: API endpoint path

        Returns:
            Full URL
        """
        endpoint = endpoint.lstrip("/")
        return urljoin(f"{self.base_url}/", endpoint)

    def _handle_error_response(self, response: httpx.Response) -> None:
        """Handle error responses by raising appropriate exceptions.

        Args:
            response: HTTP response object

        Raises:
            AuthenticationError: For 401 responses
            AuthorizationError: For 403 responses
            NotFoundError: For 404 responses
            ConflictError: For 409 responses
            ValidationError: For 422 responses
            RateLimitError: For 429 responses
            ServerError: For 5xx responses
            APIError: For other error responses
        """
        status_code = response.status_code

        try:
            error_data = response.json()
        except ValueError:
            error_data = {"detail": response.text}

        if not isinstance(error_data, dict):
            error_data = {"detail": str(error_data)}

        error_message = (
            error_data.get("errors")
            or error_data.get("error")
            or error_data.get("detail")
            or error_data.get("message")
            or "Unknown error"
        )
        if not isinstance(error_message, str):
            error_message = str(error_message)

        if status_code == 401:
            raise AuthenticationError(
                message="Authentication failed", status_code=status_code, response=error_data
            )
        elif status_code == 403:
            raise AuthorizationError(
                message="Authorization failed", status_code=status_code, response=error_data
            )
        elif status_code == 404:
            raise NotFoundError(
                message="Resource not found", status_code=status_code, response=error_data
            )
        elif status_code == 409:
            raise ConflictError(
                message="Resource conflict", status_code=status_code, response=error_data
            )
        elif status_code == 422:
            raise ValidationError(
                message=f"Validation failed: {error_message}",
                status_code=status_code,
                response=error_data,
            )
        elif status_code == 429:
            raise RateLimitError(
                message="Rate limit exceeded",
                status_code=status_code,
                response=error_data,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        elif 500 <= status_code < 600:
            raise ServerError(
                message=f"Server error: {error_message}",
                status_code=status_code,
                response=error_data,
            )
        else:
            raise APIError(
                message=f"API error: {error_message}",
                status_code=status_code,
                response=error_data,
            )

    async def send(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Make an HTTP request and return the raw response.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE, etc.)
            endpoint: API endpoint path
            params: Query parameters
            json_data: JSON request body
            **kwargs: Additional arguments passed to httpx

        Returns:
            The successful httpx response

        Raises:
            NetworkError: For network-related errors
            Various APIError subclasses: For API errors
        """
        url = self._build_url(endpoint)

        if should_log_payloads(logger, self.log_payloads) and json_data is not None:
            logger.debug(
                "api_request_payload",
                method=method,
                url=url,
                payload=truncate_payload(sanitize_payload(json_data), self.max_payload_size),
            )

        start_time = time.time()

        try:
            response = await self.client.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                headers=self._auth_headers(),
                **kwargs,
            )
        except httpx.TimeoutException as e:
            logger.error("timeout_error", method=method, url=url, error=str(e))
            raise NetworkError(f"Request timeout: {str(e)}") from e
        except httpx.TransportError as e:
            logger.error("network_error", method=method, url=url, error=str(e))
            raise NetworkError(f"Network error: {str(e)}") from e

        log_api_request(
            logger,
            method=method,
            url=url,
            status_code=response.status_code,
            duration_ms=(time.time() - start_time) * 1000,
        )

        if should_log_payloads(logger, self.log_payloads) and response.text:
            logger.debug(
                "api_response_payload",
                method=method,
                url=url,
                status_code=response.status_code,
                payload=response.text[: self.max_payload_size],
            )

        if response.status_code >= 400:
            self._handle_error_response(response)

        return response

    async def fetch_binary(self, url: str) -> bytes:
        """Download an absolute URL (e.g. a CDN asset) without API credentials.

        Args:
            url: Absolute URL to download

        Returns:
            Response body bytes

        Raises:
            NetworkError: For network-related errors
            APIError: For non-2xx responses
        """
        try:
            response = await self.client.get(url)
        except httpx.TransportError as e:
            raise NetworkError(f"Download failed: {str(e)}") from e

        log_api_request(logger, method="GET", url=url, status_code=response.status_code)
        if response.status_code >= 400:
            raise APIError(
                message=f"Download failed for {url}", status_code=response.status_code
            )
        return response.content

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self.client.aclose()
        logger.debug("client_closed", base_url=self.base_url)

    async def __aenter__(self) -> "BaseAPIClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()


def _parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds."""
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
