import datetime as dt
from decimal import Decimal

import pytest

from apple_store import AppleStoreApiError
from conftest import APP_ID, error, group, iap, ok, page, price_point, subscription
from price_engine import (
    BulkReconciler,
    PricePointCatalog,
    PriceUpdateCommand,
    ResourceNotFoundError,
    ResourceResolver,
    parse_bulk_text,
)
from pricing_models import BulkEditLine

BULK_TEXT = "US, 9.99\nCA,10.49\n\nbadline\nGB, 8.99"


@pytest.fixture()
def reconciler(client, sleeps):
    return BulkReconciler(
        ResourceResolver(client),
        PricePointCatalog(client),
        PriceUpdateCommand(client, today=lambda: dt.date(2024, 5, 1)),
        pacing_seconds=1.0,
        sleep=sleeps.append,
    )


def _one_time_purchase(session, iap_id="1001"):
    session.add("GET", f"/inAppPurchases/{iap_id}", ok({"data": iap(iap_id, "com.example.coins")}))
    session.add("POST", f"/inAppPurchases/{iap_id}/prices", ok({"data": {"type": "inAppPurchasePrices", "id": "p"}}))


def test_parse_drops_malformed_and_blank_lines():
    lines = parse_bulk_text(BULK_TEXT)

    assert lines == [
        BulkEditLine("US", Decimal("9.99")),
        BulkEditLine("CA", Decimal("10.49")),
        BulkEditLine("GB", Decimal("8.99")),
    ]


@pytest.mark.parametrize(
    "text",
    ["US 9.99", "US,9.99,extra", ",9.99", "US,", "US,abc", "US,NaN", "US,Infinity", "   ", ""],
)
def test_parse_ignores_invalid_lines(text):
    assert parse_bulk_text(text) == []


def test_parse_tolerates_whitespace_and_crlf():
    assert parse_bulk_text("  JPN ,  120 \r\nKOR,1100\r\n") == [
        BulkEditLine("JPN", Decimal("120")),
        BulkEditLine("KOR", Decimal("1100")),
    ]


def test_bulk_edit_processes_only_valid_lines(reconciler, session, sleeps):
    _one_time_purchase(session)
    session.add(
        "GET",
        "/inAppPurchases/1001/pricePoints",
        ok(page([price_point("pp-1", "8.99"), price_point("pp-2", "9.99"), price_point("pp-3", "10.49")])),
    )

    outcome = reconciler.run("1001", BULK_TEXT, True)

    assert outcome.processed == 3
    assert outcome.succeeded == 3
    assert outcome.errors == []
    territories = [call.params["filter[territory]"] for call in session.calls_to("/inAppPurchases/1001/pricePoints")]
    assert territories == ["US", "CA", "GB"]
    posts = session.calls_to("/inAppPurchases/1001/prices", method="POST")
    assert [call.json["data"]["attributes"]["pricePoint"]["id"] for call in posts] == ["pp-2", "pp-3", "pp-1"]
    assert [call.json["data"]["attributes"]["startDate"] for call in posts] == ["2024-05-03"] * 3
    assert sleeps == [1.0, 1.0]


def test_resource_is_resolved_once_per_batch(reconciler, session):
    _one_time_purchase(session)
    session.add("GET", "/inAppPurchases/1001/pricePoints", ok(page([price_point("pp-1", "0.99")])))

    reconciler.run("1001", BULK_TEXT, False)

    assert len(session.calls_to("/inAppPurchases/1001")) == 1


def test_territory_without_price_points_is_reported_and_skipped(reconciler, session):
    _one_time_purchase(session)
    session.add(
        "GET",
        "/inAppPurchases/1001/pricePoints",
        ok(page([price_point("pp-us", "9.99")])),
        ok(page([])),
        ok(page([price_point("pp-ca", "10.49")])),
    )

    outcome = reconciler.run("1001", "US, 9.99\nXX, 5.00\nCA, 10.49", True)

    assert outcome.processed == 3
    assert outcome.succeeded == 2
    assert len(outcome.errors) == 1
    assert outcome.errors[0].territory == "XX"
    assert outcome.errors[0].format() == "XX => 5.00: No price points found for territory XX"
    assert len(session.calls_to("/inAppPurchases/1001/prices", method="POST")) == 2


def test_failed_update_does_not_abort_batch(reconciler, session, sleeps):
    session.add("GET", "/inAppPurchases/1001", ok({"data": iap("1001", "com.example.coins")}))
    session.add("GET", "/inAppPurchases/1001/pricePoints", ok(page([price_point("pp-1", "1.99")])))
    session.add(
        "POST",
        "/inAppPurchases/1001/prices",
        error(409, "Price change already scheduled", "ENTITY_ERROR"),
        ok({"data": {"id": "p"}}),
    )

    outcome = reconciler.run("1001", "USA, 1.99\nCAN, 2.49", True)

    assert outcome.processed == 2
    assert outcome.succeeded == 1
    assert outcome.errors[0].format().startswith("USA => 1.99: Apple API error 409")
    assert sleeps == [1.0]
    assert outcome.to_dict()["status"] == "partial"


def test_price_point_lookup_failure_is_line_level(reconciler, session):
    _one_time_purchase(session)
    session.add(
        "GET",
        "/inAppPurchases/1001/pricePoints",
        error(400, "filter[territory] is invalid", "PARAMETER_ERROR.INVALID"),
        ok(page([price_point("pp-1", "1.99")])),
    )

    outcome = reconciler.run("1001", "ZZZ, 1.99\nUSA, 1.99", True)

    assert (outcome.processed, outcome.succeeded) == (2, 1)
    assert "PARAMETER_ERROR.INVALID" in outcome.errors[0].message


def test_subscription_batch_uses_subscription_resource(reconciler, session):
    session.add(
        "GET",
        "/inAppPurchases/2001",
        ok({"data": iap("2001", "com.example.pro", "AUTOMATICALLY_RENEWABLE_SUBSCRIPTION")}),
    )
    session.add("GET", f"/apps/{APP_ID}/subscriptionGroups", ok(page([group("g1")])))
    session.add("GET", "/subscriptionGroups/g1/subscriptions", ok(page([subscription("s-9", "com.example.pro")])))
    session.add(
        "GET",
        "/subscriptions/s-9/pricePoints",
        ok(page([price_point("sp-1", "4.99", kind="subscriptionPricePoints")])),
    )
    session.add("POST", "/subscriptionPrices", ok({"data": {"id": "sp"}}))

    outcome = reconciler.run("2001", "USA, 5\nGBR, 4.5", False)

    assert outcome.succeeded == 2
    assert len(session.calls_to(f"/apps/{APP_ID}/subscriptionGroups")) == 1
    posts = session.calls_to("/subscriptionPrices", method="POST")
    assert all(call.json["data"]["attributes"]["preserveCurrentPrice"] is False for call in posts)
    assert all(
        call.json["data"]["relationships"]["subscription"]["data"]["id"] == "s-9" for call in posts
    )


def test_resolution_failure_aborts_batch(reconciler, session):
    session.add(
        "GET",
        "/inAppPurchases/2001",
        ok({"data": iap("2001", "com.example.pro", "AUTOMATICALLY_RENEWABLE_SUBSCRIPTION")}),
    )
    session.add("GET", f"/apps/{APP_ID}/subscriptionGroups", ok(page([])))

    with pytest.raises(ResourceNotFoundError):
        reconciler.run("2001", "USA, 5", True)


def test_product_lookup_error_aborts_batch(reconciler, session):
    session.add("GET", "/inAppPurchases/1001", error(500))

    with pytest.raises(AppleStoreApiError):
        reconciler.run("1001", "USA, 5", True)


def test_no_valid_lines_makes_no_calls(reconciler, session, sleeps):
    outcome = reconciler.run("1001", "nothing useful\n\n", True)

    assert (outcome.processed, outcome.succeeded, outcome.errors) == (0, 0, [])
    assert session.calls == []
    assert sleeps == []
