"""Integration tests for product CRUD, filtered queries, cursors and stats."""

import uuid

import pytest
from fastapi.testclient import TestClient

from catalog import app as app_module


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _account(client, email="owner@example.com"):
    client.post(
        "/v1/auth/register",
        json={"email": email, "password": "TestPassword123!", "name": "Owner"},
    )
    response = client.post(
        "/v1/auth/login", json={"email": email, "password": "TestPassword123!"}
    )
    return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}


@pytest.fixture
def headers(client):
    return _account(client)


def _create(client, headers, **fields):
    body = {"name": "Desk Lamp", "price": 29.99, "stock": 5, **fields}
    response = client.post("/v1/products", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestCrud:
    def test_create_and_get(self, client, headers):
        created = _create(client, headers, description="LED lamp")
        response = client.get(f"/v1/products/{created['id']}", headers=headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["name"] == "Desk Lamp"
        assert data["price"] == 29.99
        assert data["description"] == "LED lamp"

    def test_invalid_body_is_400(self, client, headers):
        response = client.post(
            "/v1/products", json={"name": "Desk Lamp", "price": 0, "stock": 5}, headers=headers
        )
        assert response.status_code == 400

    def test_update_partial(self, client, headers):
        created = _create(client, headers)
        response = client.put(
            f"/v1/products/{created['id']}", json={"stock": 9}, headers=headers
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["stock"] == 9
        assert data["price"] == 29.99

    def test_delete(self, client, headers):
        created = _create(client, headers)
        assert client.delete(f"/v1/products/{created['id']}", headers=headers).status_code == 200
        assert client.get(f"/v1/products/{created['id']}", headers=headers).status_code == 404

    def test_unknown_and_malformed_ids_are_404(self, client, headers):
        assert client.get(f"/v1/products/{uuid.uuid4()}", headers=headers).status_code == 404
        assert client.get("/v1/products/not-a-uuid", headers=headers).status_code == 404

    def test_other_users_product_is_404(self, client, headers):
        created = _create(client, headers)
        intruder = _account(client, "intruder@example.com")
        url = f"/v1/products/{created['id']}"
        assert client.get(url, headers=intruder).status_code == 404
        assert client.put(url, json={"price": 1.0}, headers=intruder).status_code == 404
        assert client.delete(url, headers=intruder).status_code == 404
        assert client.get(url, headers=headers).json()["data"]["price"] == 29.99

    def test_list_is_scoped_to_owner(self, client, headers):
        _create(client, headers)
        intruder = _account(client, "intruder@example.com")
        _create(client, intruder, name="Other Lamp")
        data = client.get("/v1/products", headers=headers).json()["data"]
        assert data["total"] == 1
        assert [p["name"] for p in data["items"]] == ["Desk Lamp"]

    def test_list_reflects_new_product(self, client, headers):
        assert client.get("/v1/products", headers=headers).json()["data"]["total"] == 0
        _create(client, headers)
        assert client.get("/v1/products", headers=headers).json()["data"]["total"] == 1


class TestFiltered:
    def test_price_window(self, client, headers):
        _create(client, headers)
        hit = client.get(
            "/v1/products/filtered?min_price=20&max_price=100", headers=headers
        ).json()["data"]
        assert [p["price"] for p in hit["items"]] == [29.99]
        miss = client.get("/v1/products/filtered?min_price=30", headers=headers).json()["data"]
        assert miss["items"] == []
        assert miss["total"] == 0

    def test_sort_and_paging(self, client, headers):
        for name, price in (("Alpha", 3.0), ("Bravo", 1.0), ("Charlie", 2.0)):
            _create(client, headers, name=name, price=price)
        data = client.get(
            "/v1/products/filtered?sort=price:desc&page=1&page_size=2", headers=headers
        ).json()["data"]
        assert [p["name"] for p in data["items"]] == ["Alpha", "Charlie"]
        assert data["total"] == 3
        assert data["total_pages"] == 2

        single = client.get(
            "/v1/products/filtered?sort_field=name&sort_direction=desc", headers=headers
        ).json()["data"]
        assert [p["name"] for p in single["items"]] == ["Charlie", "Bravo", "Alpha"]

    def test_invalid_paging_falls_back(self, client, headers):
        _create(client, headers)
        data = client.get(
            "/v1/products/filtered?page=-1&page_size=9999", headers=headers
        ).json()["data"]
        assert data["page"] == 1
        assert data["page_size"] == 20

    def test_bad_timestamp_is_400(self, client, headers):
        response = client.get("/v1/products/filtered?created_from=yesterday", headers=headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_timestamp_window(self, client, headers):
        _create(client, headers)
        data = client.get(
            "/v1/products/filtered?created_from=2000-01-01T00:00:00Z", headers=headers
        ).json()["data"]
        assert data["total"] == 1
        data = client.get(
            "/v1/products/filtered?created_to=2000-01-01T00:00:00Z", headers=headers
        ).json()["data"]
        assert data["total"] == 0

    def test_filtered_results_invalidated_by_update(self, client, headers):
        created = _create(client, headers)
        url = "/v1/products/filtered?min_price=20&max_price=100"
        assert client.get(url, headers=headers).json()["data"]["total"] == 1
        client.put(f"/v1/products/{created['id']}", json={"price": 150.0}, headers=headers)
        assert client.get(url, headers=headers).json()["data"]["total"] == 0


class TestCursor:
    def test_walk_pages(self, client, headers):
        ids = sorted(_create(client, headers, name=f"Item {i}")["id"] for i in range(5))
        seen = []
        url = "/v1/products/cursor?page_size=2"
        while True:
            data = client.get(url, headers=headers).json()["data"]
            seen.extend(p["id"] for p in data["items"])
            if not data["has_next"]:
                break
            url = f"/v1/products/cursor?page_size=2&cursor={data['next_cursor']}"
        assert seen == ids

    def test_bad_cursor_is_400(self, client, headers):
        response = client.get("/v1/products/cursor?cursor=abc", headers=headers)
        assert response.status_code == 400


class TestStats:
    def test_stats_follow_updates(self, client, headers):
        lamp = _create(client, headers, price=10.0, stock=0)
        _create(client, headers, name="Office Chair", price=20.0, stock=20)
        stats = client.get("/v1/products/stats", headers=headers).json()["data"]
        assert stats["total_products"] == 2
        assert stats["avg_price"] == 15.0
        assert stats["out_of_stock"] == 1
        assert stats["low_stock"] == 1
        assert stats["total_value"] == 400.0

        client.put(f"/v1/products/{lamp['id']}", json={"price": 40.0}, headers=headers)
        stats = client.get("/v1/products/stats", headers=headers).json()["data"]
        assert stats["avg_price"] == 30.0


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["cache"]["type"] == "MemoryCache"
        assert response.headers["X-Request-ID"]

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
