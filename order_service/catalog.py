from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx

from . import config
from .errors import CatalogUnavailable
from .logs import correlation_id, get_logger

logger = get_logger("catalog")


@dataclass(frozen=True)
class CatalogItem:
    id: int
    name: str
    price: Decimal
    available: bool


class CatalogClient:
    """Live menu lookups against restaurant-service."""

    def __init__(self, base_url: str = config.RESTAURANT_SERVICE_URL, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=config.HTTP_TIMEOUT_SECONDS)

    def get_item(self, item_id: int) -> Optional[CatalogItem]:
        try:
            r = self.client.get(
                f"{self.base_url}/internal/v1/menu-items/{item_id}",
                headers={"X-Correlation-Id": correlation_id.get()},
            )
        except httpx.HTTPError as e:
            logger.error(f"Catalog lookup for item {item_id} failed: {e}")
            raise CatalogUnavailable(str(e)) from e

        if r.status_code == 404:
            return None
        if r.status_code != 200:
            logger.error(f"Catalog lookup for item {item_id} returned {r.status_code}")
            raise CatalogUnavailable(f"restaurant-service answered {r.status_code}")

        data = r.json()
        return CatalogItem(
            id=int(data["id"]),
            name=data["name"],
            price=Decimal(str(data["price"])),
            available=bool(data.get("is_available", True)),
        )
