"""Product catalog backend client.

The catalog lives in the dashboard backend; the engine only searches it:
- Context injection: products matching the incoming message
- Tool calls: products matching a model-issued ``search_products`` query

Products are scoped by owner and page so a page never sees another shop's
listings.
"""

import logging
from typing import Any, Protocol

import httpx
from pydantic import ValidationError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from app.config import Settings, get_settings
from app.schemas.conversation import Product

logger = logging.getLogger(__name__)


class CatalogAPIError(Exception):
    """Base exception for catalog API errors."""
    pass


class ProductSearch(Protocol):
    """Read interface the engine needs from the catalog."""

    async def search(self, owner_id: str, query: str, page_id: str) -> list[Product]:
        ...


class CatalogAPIClient:
    """Client for the catalog backend's product search endpoint."""

    def __init__(self, settings: Settings | None = None, limit: int = 10) -> None:
        """Initialize the API client."""
        self._settings = settings or get_settings()
        self._limit = limit
        self._client: httpx.AsyncClient | None = None

        if not self._settings.catalog_api_base_url:
            logger.warning("CATALOG_API_BASE_URL not configured")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._settings.catalog_api_base_url,
                timeout=10.0,
                headers={
                    "Authorization": f"Bearer {self._settings.catalog_api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    @retry(
        retry=retry_if_exception_type(httpx.RequestError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _fetch(self, params: dict[str, Any]) -> Any:
        client = await self._get_client()
        response = await client.get("/products/search", params=params)
        response.raise_for_status()
        return response.json()

    async def search(self, owner_id: str, query: str, page_id: str) -> list[Product]:
        """Search an owner's products visible on a page.

        Endpoint: GET /products/search?owner_id=...&query=...&page_id=...

        Response:
        {
            "products": [
                {
                    "name": "Mango Red",
                    "price": 450,
                    "currency": "BDT",
                    "stock": 12,
                    "description": "...",
                    "image_url": "https://...",
                    "variants": [{"name": "1kg", "price": 450}]
                }
            ]
        }

        Raises:
            CatalogAPIError: If the backend is unreachable or answers with an error.
        """
        params = {"owner_id": owner_id, "query": query, "page_id": page_id, "limit": self._limit}

        try:
            data = await self._fetch(params)
        except httpx.HTTPStatusError as e:
            logger.error(f"Catalog API error: {e.response.status_code} - {e.response.text}")
            raise CatalogAPIError(f"Failed to search products: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Catalog API request error: {e}")
            raise CatalogAPIError(f"Failed to connect to catalog API: {e}") from e
        except ValueError as e:
            logger.error(f"Catalog API returned a non-JSON body: {e}")
            raise CatalogAPIError("Catalog API returned an invalid response") from e

        rows = data.get("products", []) if isinstance(data, dict) else data
        products: list[Product] = []
        for row in rows or []:
            try:
                products.append(Product.model_validate(row))
            except ValidationError as e:
                logger.warning(f"Skipping malformed product row: {e}")

        logger.info(f"Catalog search: page={page_id}, query={query!r}, results={len(products)}")
        return products
