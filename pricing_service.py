"""Operations exposed to the HTTP layer for viewing and editing prices."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from apple_store import (
    AppleStoreClient,
    AppleStoreConfig,
    AppleStoreDecodeError,
    AppleStoreError,
    AppStoreTokenProvider,
    index_included,
    next_link,
)
from price_engine import (
    BulkReconciler,
    PricePointCatalog,
    PriceUpdateCommand,
    PriceValidationError,
    ResourceResolver,
)
from pricing_models import (
    BulkEditOutcome,
    Pagination,
    Price,
    PricePoint,
    Product,
    ResolvedResource,
    ResourceKind,
    decode_pagination,
    decode_price_point,
    decode_product,
    decode_territory,
    relationship_id,
)
from territories import territory_name

logger = logging.getLogger(__name__)

PRICE_PAGE_LIMIT = 200
US_TERRITORIES = ("USA", "US")
_UNPRICED_STATES = frozenset(
    {"DEVELOPER_REMOVED_FROM_SALE", "DEVELOPER_ACTION_NEEDED", "DELETED"}
)


@dataclass(frozen=True)
class PriceListing:
    product: Product
    resource: ResolvedResource
    prices: List[Price]
    pagination: Pagination

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prices": [price.to_dict() for price in self.prices],
            "pagination": self.pagination.to_dict(),
            "iap": {
                "id": self.product.id,
                "type": self.resource.kind.value,
                "resourceId": self.resource.resource_id,
                "attributes": self.product.attributes,
            },
        }


def _normalize_territory(territory: Optional[str]) -> str:
    return (territory or "").strip().upper()


class PricingService:
    def __init__(
        self,
        client: AppleStoreClient,
        *,
        pacing_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        update_command: Optional[PriceUpdateCommand] = None,
    ) -> None:
        self.client = client
        self.resolver = ResourceResolver(client)
        self.catalog = PricePointCatalog(client)
        self.update_command = update_command or PriceUpdateCommand(client)
        if pacing_seconds is None:
            pacing_seconds = client.config.bulk_pacing_seconds
        self.reconciler = BulkReconciler(
            self.resolver,
            self.catalog,
            self.update_command,
            pacing_seconds=pacing_seconds,
            sleep=sleep,
        )

    @classmethod
    def from_config(cls, config: AppleStoreConfig) -> "PricingService":
        client = AppleStoreClient(config, AppStoreTokenProvider(config))
        return cls(client)

    def list_products(self) -> List[Dict[str, Any]]:
        """List the app's in-app purchases with their US customer price."""
        products: List[Dict[str, Any]] = []
        path: Optional[str] = f"/apps/{self.client.app_id}/inAppPurchases"
        params: Optional[Dict[str, Any]] = {"limit": PRICE_PAGE_LIMIT}
        while path:
            response = self.client.get(path, params=params)
            for entry in response.get("data") or []:
                products.append(self._summarize_product(entry))
            path = next_link(response)
            params = None

        logger.info("Listed %d in-app purchases", len(products))
        return products

    def _summarize_product(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        try:
            product = decode_product(entry)
        except AppleStoreDecodeError as exc:
            logger.warning("Listing undecodable in-app purchase %s without a price: %s", entry.get("id"), exc)
            attributes = dict(entry.get("attributes") or {})
            attributes["usPrice"] = "-"
            return {"id": entry.get("id"), "type": entry.get("type"), "attributes": attributes}

        attributes = dict(product.attributes)
        attributes["usPrice"] = "-"
        if product.state not in _UNPRICED_STATES:
            try:
                us_price = self._find_us_price(product)
            except (AppleStoreError, requests.RequestException) as exc:
                logger.info("No prices available for in-app purchase %s (%s): %s", product.id, product.state, exc)
            else:
                if us_price is not None:
                    attributes["usPrice"] = f"${us_price.customer_price}"
        return {"id": product.id, "type": entry.get("type"), "attributes": attributes}

    def _find_us_price(self, product: Product) -> Optional[Price]:
        resource = self.resolver.resolve_product(product)
        prices, _ = self._fetch_prices(resource)
        for price in prices:
            if price.territory.code in US_TERRITORIES:
                return price
        return None

    def _fetch_prices(
        self, resource: ResolvedResource, cursor: Optional[str] = None
    ) -> Tuple[List[Price], Pagination]:
        kind = resource.kind
        params: Dict[str, Any] = {
            "include": f"{kind.price_point_relationship},territory",
            "limit": PRICE_PAGE_LIMIT,
        }
        if cursor:
            params["cursor"] = cursor
        response = self.client.get(
            f"/{kind.collection}/{resource.resource_id}/prices", params=params
        )

        included = index_included(response.get("included") or [])
        prices: List[Price] = []
        for entry in response.get("data") or []:
            price = self._join_price(entry, kind, included)
            if price is not None:
                prices.append(price)

        logger.debug(
            "Fetched %d prices for %s %s", len(prices), kind.collection, resource.resource_id
        )
        return prices, decode_pagination(response, len(prices))

    @staticmethod
    def _join_price(entry: Dict[str, Any], kind: ResourceKind, included) -> Optional[Price]:
        territory_id = relationship_id(entry, "territory")
        point_id = relationship_id(entry, kind.price_point_relationship)
        territory_entry = included.get(("territories", territory_id)) if territory_id else None
        point_entry = included.get((kind.price_point_type, point_id)) if point_id else None
        if territory_entry is None or point_entry is None:
            logger.debug(
                "Skipping price %s: territory=%s price point=%s missing from included data",
                entry.get("id"), territory_id, point_id,
            )
            return None

        territory = decode_territory(territory_entry, territory_name(territory_entry["id"]))
        point = decode_price_point(point_entry, included)
        attributes = entry.get("attributes") or {}
        return Price(
            id=entry.get("id") or "",
            price_point_id=point.id,
            territory=territory,
            customer_price=point.customer_price,
            start_date=attributes.get("startDate"),
            proceeds=point.proceeds,
        )

    def resolve_and_list_prices(
        self, product_id: str, cursor: Optional[str] = None
    ) -> PriceListing:
        product = self.resolver.fetch_product(product_id)
        resource = self.resolver.resolve_product(product)
        prices, pagination = self._fetch_prices(resource, cursor)
        return PriceListing(
            product=product, resource=resource, prices=prices, pagination=pagination
        )

    def list_price_points(self, product_id: str, territory: str) -> List[PricePoint]:
        territory = _normalize_territory(territory)
        if not product_id or not territory:
            raise PriceValidationError("Missing required fields: iapId, territory")
        resource = self.resolver.resolve(product_id)
        return self.catalog.list(resource.kind, resource.resource_id, territory)

    def update_price(
        self,
        product_id: str,
        territory: str,
        price_point_id: str,
        preserve_current_price: bool = False,
    ) -> Dict[str, Any]:
        territory = _normalize_territory(territory)
        if not product_id or not territory or not price_point_id:
            raise PriceValidationError(
                "Missing required fields: iapId, territory, pricePointId"
            )
        resource = self.resolver.resolve(product_id)
        return self.update_command.submit(
            resource.kind,
            resource.resource_id,
            territory,
            price_point_id,
            preserve_current_price,
        )

    def bulk_edit(
        self, product_id: str, raw_text: str, preserve_current_price: bool
    ) -> BulkEditOutcome:
        if not product_id:
            raise PriceValidationError("Missing required fields: iapId")
        return self.reconciler.run(product_id, raw_text, preserve_current_price)
