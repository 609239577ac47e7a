"""Typed records for App Store pricing resources and their JSON:API decoding."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple

from apple_store import AppleStoreDecodeError, extract_cursor

AUTO_RENEWABLE_SUBSCRIPTION = "AUTOMATICALLY_RENEWABLE_SUBSCRIPTION"


class ResourceKind(enum.Enum):
    ONE_TIME_PURCHASE = "inAppPurchase"
    SUBSCRIPTION = "subscription"

    @property
    def collection(self) -> str:
        if self is ResourceKind.SUBSCRIPTION:
            return "subscriptions"
        return "inAppPurchases"

    @property
    def price_point_relationship(self) -> str:
        if self is ResourceKind.SUBSCRIPTION:
            return "subscriptionPricePoint"
        return "inAppPurchasePricePoint"

    @property
    def price_point_type(self) -> str:
        return self.price_point_relationship + "s"


@dataclass(frozen=True)
class Product:
    id: str
    product_id: str
    kind: ResourceKind
    state: Optional[str] = None
    name: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ResolvedResource:
    resource_id: str
    kind: ResourceKind


@dataclass(frozen=True)
class SubscriptionRef:
    id: str
    product_id: str


@dataclass(frozen=True)
class SubscriptionGroup:
    id: str
    reference_name: Optional[str] = None


@dataclass(frozen=True)
class Territory:
    code: str
    display_name: str
    currency_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.code, "name": self.display_name, "currency": self.currency_code}


@dataclass(frozen=True)
class PricePoint:
    id: str
    customer_price: Decimal
    currency: Optional[str] = None
    proceeds: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customerPrice": str(self.customer_price),
            "currency": self.currency,
            "proceeds": None if self.proceeds is None else str(self.proceeds),
        }


@dataclass(frozen=True)
class Price:
    id: str
    price_point_id: str
    territory: Territory
    customer_price: Decimal
    start_date: Optional[str] = None
    proceeds: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pricePointId": self.price_point_id,
            "customerPrice": str(self.customer_price),
            "proceeds": None if self.proceeds is None else str(self.proceeds),
            "startDate": self.start_date,
            "territory": self.territory.to_dict(),
        }


@dataclass(frozen=True)
class Pagination:
    next_cursor: Optional[str]
    prev_cursor: Optional[str]
    total: int
    has_more: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nextCursor": self.next_cursor,
            "prevCursor": self.prev_cursor,
            "total": self.total,
            "hasMore": self.has_more,
        }


@dataclass(frozen=True)
class BulkEditLine:
    territory: str
    desired_price: Decimal


@dataclass(frozen=True)
class BulkEditError:
    territory: str
    desired_price: Decimal
    message: str

    def format(self) -> str:
        return f"{self.territory} => {self.desired_price}: {self.message}"


@dataclass
class BulkEditOutcome:
    processed: int = 0
    succeeded: int = 0
    errors: List[BulkEditError] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "errors": [error.format() for error in self.errors],
            "status": "ok" if not self.errors else "partial",
        }


def _attributes(entry: Mapping[str, Any]) -> Dict[str, Any]:
    attributes = entry.get("attributes")
    return attributes if isinstance(attributes, dict) else {}


def _require_id(entry: Any, what: str) -> str:
    if not isinstance(entry, dict):
        raise AppleStoreDecodeError(f"Expected a {what} resource object, got {type(entry).__name__}.")
    entry_id = entry.get("id")
    if not isinstance(entry_id, str) or not entry_id:
        raise AppleStoreDecodeError(f"{what} resource is missing its id.")
    return entry_id


def _require_attribute(entry: Mapping[str, Any], name: str, what: str) -> Any:
    value = _attributes(entry).get(name)
    if value is None or value == "":
        raise AppleStoreDecodeError(
            f"{what} {entry.get('id')!r} is missing the '{name}' attribute."
        )
    return value


def _to_decimal(value: Any, *, what: str) -> Decimal:
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise AppleStoreDecodeError(f"{what} is not a decimal number: {value!r}") from exc
    if not parsed.is_finite():
        raise AppleStoreDecodeError(f"{what} is not a finite number: {value!r}")
    return parsed


def _optional_decimal(value: Any, *, what: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return _to_decimal(value, what=what)


def relationship_id(entry: Mapping[str, Any], name: str) -> Optional[str]:
    relationships = entry.get("relationships") or {}
    relation = relationships.get(name) if isinstance(relationships, dict) else None
    data = relation.get("data") if isinstance(relation, dict) else None
    if isinstance(data, dict):
        candidate = data.get("id")
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def decode_product(document: Mapping[str, Any]) -> Product:
    entry = document.get("data") if "data" in document else document
    product_id = _require_id(entry, "inAppPurchase")
    purchase_type = _require_attribute(entry, "inAppPurchaseType", "In-app purchase")
    attributes = _attributes(entry)
    kind = (
        ResourceKind.SUBSCRIPTION
        if purchase_type == AUTO_RENEWABLE_SUBSCRIPTION
        else ResourceKind.ONE_TIME_PURCHASE
    )
    return Product(
        id=product_id,
        product_id=_require_attribute(entry, "productId", "In-app purchase"),
        kind=kind,
        state=attributes.get("state"),
        name=attributes.get("referenceName") or attributes.get("name"),
        attributes=dict(attributes),
    )


def decode_subscription_group(entry: Any) -> SubscriptionGroup:
    group_id = _require_id(entry, "subscriptionGroup")
    return SubscriptionGroup(id=group_id, reference_name=_attributes(entry).get("referenceName"))


def decode_subscription_ref(entry: Any) -> SubscriptionRef:
    subscription_id = _require_id(entry, "subscription")
    return SubscriptionRef(
        id=subscription_id,
        product_id=_require_attribute(entry, "productId", "Subscription"),
    )


def decode_price_point(
    entry: Any,
    included: Optional[Mapping[Tuple[str, str], Mapping[str, Any]]] = None,
) -> PricePoint:
    point_id = _require_id(entry, "price point")
    attributes = _attributes(entry)
    customer_price = _to_decimal(
        _require_attribute(entry, "customerPrice", "Price point"),
        what=f"customerPrice of price point {point_id}",
    )
    proceeds_raw = attributes.get("proceeds")
    if proceeds_raw is None:
        proceeds_raw = attributes.get("developerProceeds")

    currency = attributes.get("currency")
    if not currency and included:
        territory_id = relationship_id(entry, "territory")
        territory = included.get(("territories", territory_id)) if territory_id else None
        if territory:
            currency = _attributes(territory).get("currency")

    return PricePoint(
        id=point_id,
        customer_price=customer_price,
        currency=currency,
        proceeds=_optional_decimal(proceeds_raw, what=f"proceeds of price point {point_id}"),
    )


def decode_territory(entry: Mapping[str, Any], display_name: str) -> Territory:
    code = _require_id(entry, "territory")
    return Territory(code=code, display_name=display_name, currency_code=_attributes(entry).get("currency"))


def decode_pagination(response: Mapping[str, Any], page_size: int) -> Pagination:
    links = response.get("links") or {}
    next_link = links.get("next") if isinstance(links, dict) else None
    prev_link = links.get("prev") if isinstance(links, dict) else None
    meta = response.get("meta") or {}
    paging = meta.get("paging") if isinstance(meta, dict) else None
    total = paging.get("total") if isinstance(paging, dict) else None
    return Pagination(
        next_cursor=extract_cursor(next_link),
        prev_cursor=extract_cursor(prev_link),
        total=total if isinstance(total, int) and total else page_size,
        has_more=bool(next_link),
    )
