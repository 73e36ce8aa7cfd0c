"""Shared synchronous HTTP client used by the cluster-facing clients."""

from typing import Any, Dict, Optional

import httpx

from .utils import get_logger


class HTTPClientError(Exception):
    """An HTTP call failed (transport error or non-2xx status)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BaseHTTPClient:
    """Base class for HTTP clients."""

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initializes the HTTP client.

        Args:
            base_url: The base URL for the client.
            headers: A dictionary of headers to include in all requests.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (tests inject a MockTransport).
        """
        self.base_url = (base_url or "").rstrip("/")
        self.headers = headers or {}
        self.logger = get_logger(self.__class__.__name__)
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=self.headers,
            timeout=timeout,
            transport=transport,
        )

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Makes an HTTP request and converts failures into HTTPClientError."""
        try:
            response = self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            raise HTTPClientError(
                f"HTTP error {e.response.status_code} from {e.request.url}: {e.response.text[:200]}",
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise HTTPClientError(f"Request to {e.request.url} failed: {e}") from e

    def get_json(self, url: str, params: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Any:
        """Sends a GET request and decodes the JSON body."""
        response = self._request("GET", url, params=params, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise HTTPClientError(f"Invalid JSON from {response.request.url}: {e}") from e

    def post(self, url: str, json: Optional[Dict[str, Any]] = None, **kwargs: Any) -> httpx.Response:
        """Sends a POST request."""
        return self._request("POST", url, json=json, **kwargs)

    def close(self):
        """Closes the underlying HTTP client."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
