"""Price resolution and bulk price reconciliation against App Store Connect.

The flow for one territory is::

    ResourceResolver -> PricePointCatalog -> match_price_point -> PriceUpdateCommand

``BulkReconciler`` drives that flow for every line of a bulk edit, strictly one
line after the other, pausing between lines to stay under Apple's request rate
ceiling.
"""

from __future__ import annotations

import datetime as _dt
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import requests

from apple_store import (
    AppleStoreApiError,
    AppleStoreClient,
    AppleStoreDecodeError,
    AppleStoreError,
    index_included,
    next_link,
)
from pricing_models import (
    BulkEditError,
    BulkEditLine,
    BulkEditOutcome,
    PricePoint,
    Product,
    ResolvedResource,
    ResourceKind,
    SubscriptionGroup,
    SubscriptionRef,
    decode_price_point,
    decode_product,
    decode_subscription_group,
    decode_subscription_ref,
)

logger = logging.getLogger(__name__)

PRICE_POINT_PAGE_LIMIT = 200
PRICE_CHANGE_LEAD_DAYS = 2


class ResourceNotFoundError(AppleStoreError):
    """A subscription product has no matching subscription resource."""


class EmptyCandidateSetError(AppleStoreError):
    """No price points are available to choose from."""


class PriceValidationError(AppleStoreError):
    """Required input for a price update is missing."""


class ResourceResolver:
    """Maps an in-app purchase id to the resource that actually carries prices.

    One-time purchases price themselves. Auto-renewable subscriptions are
    priced through a separate ``subscriptions`` resource whose id can only be
    found by scanning the app's subscription groups for the product identifier.
    """

    def __init__(self, client: AppleStoreClient) -> None:
        self._client = client

    def fetch_product(self, product_id: str) -> Product:
        response = self._client.get(f"/inAppPurchases/{product_id}")
        return decode_product(response)

    def resolve(self, product_id: str) -> ResolvedResource:
        return self.resolve_product(self.fetch_product(product_id))

    def resolve_product(self, product: Product) -> ResolvedResource:
        if product.kind is not ResourceKind.SUBSCRIPTION:
            return ResolvedResource(resource_id=product.id, kind=ResourceKind.ONE_TIME_PURCHASE)

        subscription = self.find_subscription(product.product_id)
        if subscription is None:
            raise ResourceNotFoundError(
                f"Could not find associated subscription for in-app purchase {product.id} "
                f"({product.product_id})"
            )
        logger.info(
            "Resolved subscription %s for in-app purchase %s (%s)",
            subscription.id,
            product.id,
            product.product_id,
        )
        return ResolvedResource(resource_id=subscription.id, kind=ResourceKind.SUBSCRIPTION)

    def find_subscription(self, product_identifier: str) -> Optional[SubscriptionRef]:
        """Return the first subscription whose productId matches, or ``None``.

        Groups are visited in the order Apple returns them and the scan stops
        at the first match, so later groups are never requested.
        """
        for group in self.iter_subscription_groups():
            for subscription in self.iter_group_subscriptions(group):
                if subscription.product_id == product_identifier:
                    return subscription
        return None

    def iter_subscription_groups(self) -> Iterator[SubscriptionGroup]:
        path: Optional[str] = f"/apps/{self._client.app_id}/subscriptionGroups"
        while path:
            response = self._client.get(path)
            for entry in response.get("data") or []:
                yield decode_subscription_group(entry)
            path = next_link(response)

    def iter_group_subscriptions(self, group: SubscriptionGroup) -> Iterator[SubscriptionRef]:
        path: Optional[str] = f"/subscriptionGroups/{group.id}/subscriptions"
        while path:
            response = self._client.get(path)
            for entry in response.get("data") or []:
                yield decode_subscription_ref(entry)
            path = next_link(response)


def _decode_page(response: Dict[str, Any]) -> List[PricePoint]:
    included = index_included(response.get("included") or [])
    return [decode_price_point(entry, included) for entry in response.get("data") or []]


class PricePointCatalog:
    def __init__(self, client: AppleStoreClient, *, page_limit: int = PRICE_POINT_PAGE_LIMIT) -> None:
        self._client = client
        self._page_limit = page_limit

    def list(self, kind: ResourceKind, resource_id: str, territory: str) -> List[PricePoint]:
        """Return every price point Apple allows for the resource in a territory.

        All pages are merged. A failure on the first page raises; a later page
        that fails or holds an undecodable entry is dropped along with the rest,
        keeping what was fetched so far. Duplicate ids are dropped
        and vendor order is preserved.
        """
        params = {"filter[territory]": territory, "limit": self._page_limit}
        response = self._client.get(
            f"/{kind.collection}/{resource_id}/pricePoints", params=params
        )

        points: Dict[str, PricePoint] = {}
        for point in _decode_page(response):
            points.setdefault(point.id, point)

        pages = 1
        link = next_link(response)
        while link:
            try:
                response = self._client.get(link)
                page = _decode_page(response)
            except (AppleStoreApiError, AppleStoreDecodeError, requests.RequestException) as exc:
                logger.warning(
                    "Price point page %d for %s %s in %s failed; keeping %d price points: %s",
                    pages + 1,
                    kind.collection,
                    resource_id,
                    territory,
                    len(points),
                    exc,
                )
                break

            pages += 1
            for point in page:
                points.setdefault(point.id, point)
            link = next_link(response)

        logger.debug(
            "Fetched %d price points over %d page(s) for %s %s in %s",
            len(points), pages, kind.collection, resource_id, territory,
        )
        return list(points.values())


def match_price_point(desired_price: Decimal, candidates: Sequence[PricePoint]) -> PricePoint:
    """Pick the price point whose customer price is closest to ``desired_price``.

    On ties the earliest candidate wins.
    """
    if not candidates:
        raise EmptyCandidateSetError("No price points to match against")

    best = candidates[0]
    best_diff = abs(desired_price - best.customer_price)
    for candidate in candidates[1:]:
        diff = abs(desired_price - candidate.customer_price)
        if diff < best_diff:
            best = candidate
            best_diff = diff
    return best


def _utc_today() -> _dt.date:
    return _dt.datetime.now(_dt.timezone.utc).date()


class PriceUpdateCommand:
    def __init__(
        self,
        client: AppleStoreClient,
        *,
        today: Callable[[], _dt.date] = _utc_today,
    ) -> None:
        self._client = client
        self._today = today

    def start_date(self) -> str:
        return (self._today() + _dt.timedelta(days=PRICE_CHANGE_LEAD_DAYS)).isoformat()

    def build_payload(
        self,
        kind: ResourceKind,
        resource_id: str,
        territory: str,
        price_point_id: str,
        preserve_current_price: bool,
    ) -> Dict[str, Any]:
        start_date = self.start_date()
        if kind is ResourceKind.SUBSCRIPTION:
            return {
                "data": {
                    "type": "subscriptionPrices",
                    "attributes": {
                        "startDate": start_date,
                        "preserveCurrentPrice": bool(preserve_current_price),
                    },
                    "relationships": {
                        "subscription": {
                            "data": {"type": "subscriptions", "id": resource_id}
                        },
                        "subscriptionPricePoint": {
                            "data": {"type": "subscriptionPricePoints", "id": price_point_id}
                        },
                    },
                }
            }
        return {
            "data": {
                "type": "inAppPurchasePrices",
                "attributes": {
                    "startDate": start_date,
                    "territory": territory,
                    "pricePoint": {"id": price_point_id},
                },
            }
        }

    def submit(
        self,
        kind: ResourceKind,
        resource_id: str,
        territory: str,
        price_point_id: str,
        preserve_current_price: bool,
    ) -> Dict[str, Any]:
        missing = [
            name
            for name, value in (
                ("resourceId", resource_id),
                ("territory", territory),
                ("pricePointId", price_point_id),
            )
            if not value
        ]
        if missing:
            raise PriceValidationError(f"Missing required fields: {', '.join(missing)}")

        payload = self.build_payload(
            kind, resource_id, territory, price_point_id, preserve_current_price
        )
        if kind is ResourceKind.SUBSCRIPTION:
            path = "/subscriptionPrices"
        else:
            path = f"/inAppPurchases/{resource_id}/prices"

        logger.info(
            "Submitting %s price change for %s in %s: price point %s from %s",
            kind.value,
            resource_id,
            territory,
            price_point_id,
            payload["data"]["attributes"]["startDate"],
        )
        return self._client.post(path, payload)


def parse_bulk_text(raw_text: str) -> List[BulkEditLine]:
    """Parse ``territory, price`` lines, silently dropping anything malformed."""
    lines: List[BulkEditLine] = []
    for raw_line in (raw_text or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        parts = [part.strip() for part in line.split(",")]
        if len(parts) != 2 or not parts[0]:
            continue
        try:
            price = Decimal(parts[1])
        except InvalidOperation:
            continue
        if not price.is_finite():
            continue
        lines.append(BulkEditLine(territory=parts[0], desired_price=price))
    return lines


class BulkReconciler:
    def __init__(
        self,
        resolver: ResourceResolver,
        catalog: PricePointCatalog,
        command: PriceUpdateCommand,
        *,
        pacing_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._resolver = resolver
        self._catalog = catalog
        self._command = command
        self._pacing_seconds = pacing_seconds
        self._sleep = sleep

    def run(
        self,
        product_id: str,
        raw_text: str,
        preserve_current_price: bool,
    ) -> BulkEditOutcome:
        lines = parse_bulk_text(raw_text)
        outcome = BulkEditOutcome()
        if not lines:
            logger.info("Bulk edit for %s has no valid lines", product_id)
            return outcome

        # Resolution failures abort the whole batch.
        resource = self._resolver.resolve(product_id)
        logger.info(
            "Starting bulk edit of %d line(s) for %s (%s %s)",
            len(lines), product_id, resource.kind.value, resource.resource_id,
        )

        for index, line in enumerate(lines):
            if index:
                self._sleep(self._pacing_seconds)
            outcome.processed += 1
            try:
                self._apply_line(resource, line, preserve_current_price)
            except (AppleStoreError, requests.RequestException) as exc:
                error = BulkEditError(line.territory, line.desired_price, str(exc))
                logger.warning("Bulk edit line failed: %s", error.format())
                outcome.errors.append(error)
            else:
                outcome.succeeded += 1

        logger.info(
            "Bulk edit for %s finished: %d/%d succeeded, %d error(s)",
            product_id, outcome.succeeded, outcome.processed, outcome.failed,
        )
        return outcome

    def _apply_line(
        self,
        resource: ResolvedResource,
        line: BulkEditLine,
        preserve_current_price: bool,
    ) -> None:
        points = self._catalog.list(resource.kind, resource.resource_id, line.territory)
        if not points:
            raise EmptyCandidateSetError(f"No price points found for territory {line.territory}")

        match = match_price_point(line.desired_price, points)
        logger.info(
            "Matched %s %s to price point %s (%s %s)",
            line.territory, line.desired_price, match.id, match.customer_price, match.currency or "",
        )
        self._command.submit(
            resource.kind,
            resource.resource_id,
            line.territory,
            match.id,
            preserve_current_price,
        )
