"""
Order Service — Catalog lookup

Product name/image for display. Never consulted for a state decision, so a
catalog outage only degrades what an order line shows.
"""

import logging

import httpx

logger = logging.getLogger(__name__)


class CatalogClient:
    def __init__(self, product_service_url: str, timeout: float = 5.0) -> None:
        self.base_url = product_service_url.rstrip("/")
        self.timeout = timeout

    async def get_product(self, product_id: str) -> dict | None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(f"{self.base_url}/api/products/{product_id}")
                if resp.status_code == 404:
                    return None
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPError as e:
            logger.warning("Catalog lookup for %s failed: %s", product_id, e)
            return None

        product = body.get("data", body) if isinstance(body, dict) else None
        if isinstance(product, dict) and "product" in product:
            product = product["product"]
        return product if isinstance(product, dict) else None
