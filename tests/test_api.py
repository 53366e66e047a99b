import os
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

from main import app
from routers.dependencies import get_recommendation_service
from schemas.recommendation_schemas import RecommendedProduct, RefreshOutcome, ScoredProduct
from services.errors import QueryFailure, StoreWriteFailure

ADMIN_HEADERS = {"Authorization": f"Bearer {os.environ['ADMIN_API_KEY']}"}


def _product(product_id, score, price=None):
    return RecommendedProduct(
        product_id=product_id,
        score=score,
        name=f"Product {product_id}",
        description=None,
        link_rewrite=f"product-{product_id}",
        show_price=True,
        category=None,
        ean13=None,
        id_image=f"{product_id}-0",
        image="http://shop.test/img/p/default-home_default.jpg",
        link=f"http://shop.test/{product_id}-product-{product_id}.html",
        allow_oosp=False,
        quantity=3,
        displayed_price=price,
    )


@pytest.fixture
def service():
    stub = MagicMock()
    stub.for_product = AsyncMock(return_value=[_product(30, 9, Decimal("12.5")), _product(20, 5)])
    stub.for_cart = AsyncMock(return_value=[_product(20, 2)])
    stub.recommend = AsyncMock(return_value=[ScoredProduct(30, 9), ScoredProduct(20, 5)])
    stub.refresh = AsyncMock(return_value=RefreshOutcome(status="completed", orders_processed=3, batches=1))
    stub.trigger_full_rebuild = AsyncMock(return_value=RefreshOutcome(status="locked_out", full=True))
    stub.status = AsyncMock(return_value={"last_update": 0, "processed_orders": 0, "pair_rows": 0})
    stub.get_metrics = MagicMock(return_value={"summary": {}, "phases": {}, "real_time": {}})
    stub.get_settings = AsyncMock(return_value={"shop_id": 1, "display_price": False, "number_of_products": 10})
    stub.update_settings = AsyncMock(return_value={"shop_id": 1, "display_price": True, "number_of_products": 10})
    stub.clear_settings = AsyncMock(return_value=3)

    app.dependency_overrides[get_recommendation_service] = lambda: stub
    yield stub
    app.dependency_overrides.clear()


@pytest.fixture
def client(service):
    return TestClient(app)


def test_product_recommendations(client, service):
    response = client.get("/api/recommendations/products/10", params={"shopId": 1, "groups": "3,4", "limit": 2})

    assert response.status_code == 200
    products = response.json()["products"]
    assert [p["product_id"] for p in products] == [30, 20]
    assert products[0]["displayed_price"] == "12.50"
    assert "displayed_price" not in products[1]
    service.for_product.assert_awaited_once_with(10, 1, [3, 4], 2)
    assert "X-Request-Id" in response.headers


def test_product_recommendations_scored_only(client, service):
    response = client.get("/api/recommendations/products/10", params={"enrich": "false"})

    assert response.status_code == 200
    assert response.json() == {"products": [{"product_id": 30, "score": 9}, {"product_id": 20, "score": 5}]}
    service.recommend.assert_awaited_once_with([10], None, [], None)


def test_query_failure_degrades_to_empty_block(client, service):
    service.for_product.side_effect = QueryFailure(1, RuntimeError("db down"))

    response = client.get("/api/recommendations/products/10")

    assert response.status_code == 503
    body = response.json()
    assert body["products"] == []
    assert "db down" in body["error"]


def test_empty_result_is_not_an_error(client, service):
    service.for_product.return_value = []

    response = client.get("/api/recommendations/products/10")

    assert response.status_code == 200
    assert response.json() == {"products": []}


def test_cart_recommendations(client, service):
    response = client.post(
        "/api/recommendations/cart",
        json={"shopId": 2, "groups": [1], "products": [{"id_product": 5}, {"id_product": 6}], "limit": 4},
    )

    assert response.status_code == 200
    assert [p["product_id"] for p in response.json()["products"]] == [20]
    service.for_cart.assert_awaited_once_with([{"id_product": 5}, {"id_product": 6}], 2, [1], 4)


def test_scored_recommendations_refresh_failure(client, service):
    service.recommend.side_effect = StoreWriteFailure("fold_batch", RuntimeError("disk full"))

    response = client.post("/api/recommendations", json={"productIds": [1, 2]})

    assert response.status_code == 503
    assert response.json()["products"] == []


def test_refresh_requires_admin_key(client, service):
    missing = client.post("/api/copurchase/refresh")
    wrong = client.post("/api/copurchase/refresh", headers={"Authorization": "Bearer nope"})

    assert missing.status_code in (401, 403)
    assert wrong.status_code == 401
    service.refresh.assert_not_awaited()


def test_refresh_and_rebuild(client, service):
    refreshed = client.post("/api/copurchase/refresh", headers=ADMIN_HEADERS)
    rebuilt = client.post("/api/copurchase/rebuild", headers=ADMIN_HEADERS)

    assert refreshed.status_code == 200
    assert refreshed.json()["success"] is True
    assert refreshed.json()["outcome"]["orders_processed"] == 3
    assert rebuilt.status_code == 200
    assert rebuilt.json()["success"] is False
    assert rebuilt.json()["outcome"]["status"] == "locked_out"


def test_refresh_store_failure(client, service):
    service.refresh.side_effect = StoreWriteFailure("fold_batch", RuntimeError("disk full"), {"first_order_id": 7})

    response = client.post("/api/copurchase/refresh", headers=ADMIN_HEADERS)

    assert response.status_code == 503
    assert response.json()["details"]["first_order_id"] == 7


def test_status_and_metrics_are_public(client, service):
    assert client.get("/api/copurchase/status").json()["pair_rows"] == 0
    assert client.get("/api/copurchase/metrics").json() == {"summary": {}, "phases": {}, "real_time": {}}


def test_settings_endpoints(client, service):
    read = client.get("/api/settings", params={"shop_id": 1}, headers=ADMIN_HEADERS)
    updated = client.put(
        "/api/settings", json={"display_price": True, "number_of_products": -2}, headers=ADMIN_HEADERS
    )
    cleared = client.delete("/api/settings", headers=ADMIN_HEADERS)

    assert read.json()["number_of_products"] == 10
    assert updated.json()["settings"]["display_price"] is True
    service.update_settings.assert_awaited_once_with(display_price=True, number_of_products=-2, shop_id=None)
    assert cleared.json() == {"success": True, "removed": 3}


def test_healthz(client):
    assert client.get("/healthz").json() == {"ok": True}
