"""Integration tests for the store owner dashboard API."""

import pytest
from fastapi.testclient import TestClient

from marketplace.dashboard import serialize_menu, serialize_order, serialize_store
from marketplace.main import create_app

AUTH = {"authorization": "Bearer test-token"}


@pytest.fixture()
def client(settings, seed, marketplace_docs):
    seed(marketplace_docs)
    with TestClient(create_app(settings)) as client:
        yield client


class TestAuthentication:
    def test_missing_token(self, client):
        response = client.get("/dashboard/store")
        assert response.status_code == 401
        assert response.json()["code"] == "auth/unauthorized"

    def test_unverifiable_token_without_identity_provider(self, client):
        response = client.get("/dashboard/store", headers={"authorization": "Bearer other"})
        assert response.status_code == 401


class TestStore:
    def test_get_primary_store(self, client):
        response = client.get("/dashboard/store", headers=AUTH)
        assert response.status_code == 200
        store = response.json()["store"]
        assert store["id"] == "store-1"
        assert store["owner_uid"] == "test-owner"
        assert store["delivery"]["base_fee"] == 3000

    def test_update_store_resyncs_menu_titles(self, client):
        response = client.patch(
            "/dashboard/store",
            headers=AUTH,
            json={"name": "호건치킨 본점", "region": "seoul_gangnam", "delivery": {"available": True, "base_fee": 0}},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["store"]["name"] == "호건치킨 본점"
        assert body["store"]["status"] == "open"
        assert "호건치킨-본점" in body["title_preview"]

        menu = client.get("/dashboard/menus", headers=AUTH).json()["menus"]
        chicken = next(m for m in menu if m["id"] == "menu-1")
        assert chicken["title"].startswith("seoul_gangnam_호건치킨-본점_후라이드-치킨_10000_0_")
        assert chicken["title_v"] == 2

    def test_update_store_requires_name_and_region(self, client):
        response = client.patch("/dashboard/store", headers=AUTH, json={"name": "only name"})
        assert response.status_code == 400
        assert response.json()["code"] == "store/invalid-payload"


class TestMenus:
    def test_list_menus_for_owned_store(self, client):
        response = client.get("/dashboard/menus", headers=AUTH, params={"storeId": "store-1"})
        assert response.status_code == 200
        assert {m["id"] for m in response.json()["menus"]} == {"menu-1", "menu-2"}

    def test_foreign_store_is_forbidden(self, client):
        response = client.get("/dashboard/menus", headers=AUTH, params={"storeId": "store-2"})
        assert response.status_code == 403
        assert response.json()["code"] == "store/unauthorized"

    def test_create_menu_computes_title(self, client):
        response = client.post(
            "/dashboard/stores/store-1/menus",
            headers=AUTH,
            json={"name": "치즈볼", "price": "3000", "stock": 20, "images": ["a.png", 3]},
        )
        assert response.status_code == 201
        menu = response.json()["menu"]
        assert menu["store_id"] == "store-1"
        assert menu["price"] == 3000
        assert menu["images"] == ["a.png"]
        assert menu["title"].endswith("__hogun")
        assert menu["title_v"] == 1

    def test_create_menu_validates_payload(self, client):
        response = client.post("/dashboard/stores/store-1/menus", headers=AUTH, json={"name": "가격없음", "stock": 1})
        assert response.status_code == 400
        assert response.json()["code"] == "menu/invalid-payload"

    def test_update_menu(self, client):
        response = client.put(
            "/dashboard/menus/menu-1",
            headers=AUTH,
            json={"name": "후라이드 치킨", "price": 11000, "stock": 0},
        )
        assert response.status_code == 200
        menu = response.json()["menu"]
        assert menu["price"] == 11000
        assert "_11000_" in menu["title"]
        assert menu["title_v"] == 2

    def test_delete_menu(self, client):
        response = client.delete("/dashboard/menus/menu-2", headers=AUTH)
        assert response.status_code == 204
        assert client.get("/menu/menu-2").status_code == 404

    def test_foreign_menu_cannot_be_deleted(self, client):
        response = client.delete("/dashboard/menus/menu-3", headers=AUTH)
        assert response.status_code == 403


class TestOrders:
    def test_list_and_get_orders(self, client):
        created = client.post("/order", json={"user_id": "u1", "items": [{"menu_id": "menu-1", "qty": 1}]})
        order_id = created.json()["order_id"]

        listing = client.get("/dashboard/orders", headers=AUTH)
        assert listing.status_code == 200
        assert [o["id"] for o in listing.json()["orders"]] == [order_id]

        detail = client.get(f"/dashboard/orders/{order_id}", headers=AUTH)
        assert detail.status_code == 200
        order = detail.json()["order"]
        assert order["items"][0]["qty"] == 1
        assert order["items"][0]["name"] == "후라이드 치킨"
        assert order["timeline"][0]["status"] == "pending"

    def test_missing_order(self, client):
        response = client.get("/dashboard/orders/ghost", headers=AUTH)
        assert response.status_code == 404
        assert response.json()["code"] == "order/not-found"


class TestSerializers:
    def test_store_defaults_for_malformed_fields(self):
        store = serialize_store({"id": "s1", "name": 7, "delivery": "none", "created_at": " "})
        assert store["name"] == ""
        assert store["status"] == "open"
        assert store["delivery"] == {"available": False, "base_fee": 0, "rules": []}
        assert store["rating"] == {"score": 0, "count": 0}
        assert store["created_at"] is None

    def test_menu_coerces_stock_and_version(self):
        menu = serialize_menu({"id": "m1", "stock": "out_of_stock", "title_v": "3", "images": ["a.png", None]})
        assert menu["stock"] == 0
        assert menu["title_v"] == 3
        assert menu["rating"] is None
        assert menu["images"] == ["a.png"]
        assert menu["currency"] == "KRW"

    def test_menu_with_rating(self):
        menu = serialize_menu({"id": "m1", "rating": {"score": "4.5", "count": 2}})
        assert menu["rating"] == {"score": 4.5, "count": 2}

    def test_order_items_and_timeline(self):
        order = serialize_order(
            {
                "id": "o1",
                "status": None,
                "total_price": "x",
                "items": [
                    {"menu_id": "m1", "name": "치킨", "quantity": 2, "price": 1000, "selected_options": [{"id": "large", "label": "라지"}, "콜라", 3]},
                    "broken",
                ],
                "timeline": [{"status": "pending", "at": ""}, "broken"],
            }
        )
        assert order["status"] == "pending"
        assert order["items"] == [
            {"menu_id": "m1", "name": "치킨", "qty": 2, "selected_options": ["라지", "콜라"], "price": 1000}
        ]
        assert order["timeline"] == [{"status": "pending", "at": None}]
