from abc import ABC, abstractmethod
from typing import Optional, Dict, Iterable
from fastapi import status
import httpx

from shared.utils import AppException, settings
from app.models import ProductSnapshot


class ProductCatalog(ABC):
    """Read-only view of the products service."""

    @abstractmethod
    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, ProductSnapshot]:
        """Existing products among ``product_ids``, active or not, keyed by id."""

    async def get_product(self, product_id: str) -> Optional[ProductSnapshot]:
        products = await self.get_products([product_id])
        return products.get(product_id)


class HttpProductCatalog(ProductCatalog):
    def __init__(
        self,
        base_url: str = settings.PRODUCTS_SERVICE_URL,
        request_id: Optional[str] = None,
        timeout: float = settings.CATALOG_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url
        self.request_id = request_id
        self.timeout = timeout

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, ProductSnapshot]:
        ids = list(dict.fromkeys(product_ids))
        if not ids:
            return {}

        headers = {}
        if self.request_id:
            headers["X-Request-ID"] = self.request_id

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/products/lookup",
                    json={"ids": ids},
                    headers=headers,
                )
                response.raise_for_status()
            except httpx.RequestError:
                raise AppException(status.HTTP_503_SERVICE_UNAVAILABLE, "Products service unavailable")
            except httpx.HTTPStatusError:
                raise AppException(status.HTTP_503_SERVICE_UNAVAILABLE, "Products service returned an error")

        products = {}
        for doc in response.json()["data"]:
            product = ProductSnapshot(
                id=doc["id"],
                name=doc["name"],
                price=doc["price"],
                stock=doc["stock"],
                is_active=doc["is_active"],
                image_url=doc.get("image_url"),
            )
            products[product.id] = product
        return products
