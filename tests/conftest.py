import json
import os
import tempfile
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pytest

os.environ.setdefault("LOG_DIRECTORY", tempfile.mkdtemp(prefix="iap-price-logs-"))

from apple_store import AppleStoreClient, AppleStoreConfig  # noqa: E402

BASE_URL = "https://api.example.test/v1"
APP_ID = "6400000000"


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.content = text.encode("utf-8")

    def json(self) -> Any:
        if self._payload is None:
            return json.loads(self.text)
        return self._payload


@dataclass
class Call:
    method: str
    url: str
    params: Optional[Dict[str, Any]]
    json: Optional[Dict[str, Any]]
    headers: Dict[str, str]


class FakeSession:
    """Stands in for ``requests.Session`` and replays canned responses per URL.

    Each route holds a queue; the last queued response is reused once the
    queue is down to one entry.
    """

    def __init__(self) -> None:
        self.routes: Dict[tuple, List[Any]] = {}
        self.calls: List[Call] = []

    def add(self, method: str, path_or_url: str, *responses: Any) -> None:
        self.routes.setdefault((method, url_for(path_or_url)), []).extend(responses)

    def request(self, method, url, headers=None, params=None, json=None, timeout=None):
        self.calls.append(Call(method, url, params, json, headers or {}))
        queue = self.routes.get((method, url))
        if not queue:
            raise AssertionError(f"Unexpected request {method} {url}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def calls_to(self, path_or_url: str, method: str = "GET") -> List[Call]:
        url = url_for(path_or_url)
        return [call for call in self.calls if call.url == url and call.method == method]


class StaticTokenProvider:
    def __init__(self, token: str = "test-token") -> None:
        self.token = token
        self.invalidations = 0

    def generate(self, *, force_refresh: bool = False) -> str:
        return self.token

    def invalidate(self) -> None:
        self.invalidations += 1


def url_for(path_or_url: str) -> str:
    if path_or_url.startswith("http"):
        return path_or_url
    return BASE_URL + path_or_url


def ok(payload: Dict[str, Any]) -> FakeResponse:
    return FakeResponse(200, payload)


def error(status_code: int, detail: str = "Something went wrong", code: str = "ERROR") -> FakeResponse:
    return FakeResponse(
        status_code,
        {"errors": [{"status": str(status_code), "code": code, "detail": detail}]},
    )


def page(data: List[Dict[str, Any]], *, next_url: Optional[str] = None, included=None, total=None):
    document: Dict[str, Any] = {"data": data, "links": {}}
    if next_url:
        document["links"]["next"] = next_url
    if included is not None:
        document["included"] = included
    if total is not None:
        document["meta"] = {"paging": {"total": total, "limit": 200}}
    return document


def iap(iap_id: str, product_id: str, purchase_type: str = "CONSUMABLE", state: str = "APPROVED"):
    return {
        "type": "inAppPurchases",
        "id": iap_id,
        "attributes": {
            "referenceName": f"Reference {product_id}",
            "productId": product_id,
            "inAppPurchaseType": purchase_type,
            "state": state,
        },
    }


def subscription(sub_id: str, product_id: str):
    return {"type": "subscriptions", "id": sub_id, "attributes": {"productId": product_id}}


def group(group_id: str):
    return {"type": "subscriptionGroups", "id": group_id, "attributes": {"referenceName": group_id}}


def price_point(point_id: str, customer_price: str, *, currency: Optional[str] = "USD", proceeds: Optional[str] = None, kind: str = "inAppPurchasePricePoints"):
    attributes: Dict[str, Any] = {"customerPrice": customer_price}
    if currency:
        attributes["currency"] = currency
    if proceeds:
        attributes["proceeds"] = proceeds
    return {"type": kind, "id": point_id, "attributes": attributes}


@pytest.fixture()
def config() -> AppleStoreConfig:
    return AppleStoreConfig(
        issuer_id="69a6de7f-0000-47e3-e053-5b8c7c11a4d1",
        key_id="ABCDEFGHIJ",
        private_key_path="unused.p8",
        app_id=APP_ID,
        api_base_url=BASE_URL,
        timeout=5,
        bulk_pacing_seconds=1.0,
    )


@pytest.fixture()
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def tokens() -> StaticTokenProvider:
    return StaticTokenProvider()


@pytest.fixture()
def sleeps() -> List[float]:
    return []


@pytest.fixture()
def client(config, session, tokens, sleeps) -> AppleStoreClient:
    return AppleStoreClient(config, tokens, session=session, sleep=sleeps.append)
