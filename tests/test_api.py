"""
Tests HTTP (FastAPI TestClient) - le service est injecté via dependency_overrides.
"""
import psycopg2
import pytest
from fastapi.testclient import TestClient

from main import app, get_service


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestStockEndpoints:

    def test_stock_cached(self, client):
        first = client.get("/api/products/stock").json()
        second = client.get("/api/products/stock").json()

        assert first["stock"] == 42 and first["cache_hit"] is False
        assert second["stock"] == 42 and second["cache_hit"] is True
        assert second["elapsed_ms"] >= 0

    def test_stock_no_cache(self, client, store):
        client.get("/api/products/stock")
        store.set_stock("Alpha Toy", 7)

        assert client.get("/api/products/stock").json()["stock"] == 42
        body = client.get("/api/products/stock/no-cache").json()
        assert body["stock"] == 7 and body["cache_hit"] is False

    def test_store_down_is_503(self, client, store):
        store.fail = True
        response = client.get("/api/products/stock")
        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"
        assert response.json() == {"detail": "Database unavailable"}

    def test_unexpected_database_error_is_500(self, client, store):
        def broken(name):
            raise psycopg2.ProgrammingError("relation \"products\" does not exist")

        store.get_aggregate_stock = broken
        response = client.get("/api/products/stock/no-cache")
        assert response.status_code == 500


class TestSearchEndpoints:

    def test_search_default_strategy_is_cached(self, client):
        first = client.get("/api/products/search", params={"term": "Alpha"}).json()
        second = client.get("/api/products/search", params={"term": "Alpha"}).json()

        assert first["strategy"] == "prefix_cached"
        assert first["count"] == 2 and first["cache_hit"] is False
        assert second["cache_hit"] is True
        assert {p["name"] for p in second["data"]} == {"Alpha Toy", "Alpha Robot"}

    def test_search_with_explicit_strategy(self, client):
        body = client.get(
            "/api/products/search", params={"term": "Alpha", "strategy": "full_scan"}
        ).json()
        assert body["strategy"] == "full_scan"
        assert body["count"] == 3

    def test_unknown_strategy_is_422(self, client):
        response = client.get("/api/products/search", params={"term": "A", "strategy": "fuzzy"})
        assert response.status_code == 422

    @pytest.mark.parametrize("path,expected", [
        ("/api/products/search/full-scan", 3),
        ("/api/products/search/prefix", 2),
        ("/api/products/search/cached", 2),
    ])
    def test_per_strategy_routes(self, client, path, expected):
        body = client.get(path, params={"term": "Alpha"}).json()
        assert body["count"] == expected
        assert body["term"] == "Alpha"

    def test_empty_term_returns_catalog(self, client, store):
        body = client.get("/api/products/search/prefix").json()
        assert body["count"] == len(store.products)

    def test_price_is_serialized(self, client):
        body = client.get("/api/products/search/prefix", params={"term": "Alpha Toy"}).json()
        assert body["data"][0]["price"] == "9.99"


class TestSeedAndListEndpoints:

    def test_init_existing_product(self, client):
        body = client.post("/api/products/init").json()
        assert body == {"inserted": False, "message": "Test data already exists"}

    def test_init_bulk(self, client):
        first = client.post("/api/products/init-bulk", params={"n": 10}).json()
        second = client.post("/api/products/init-bulk", params={"n": 10}).json()
        assert first["inserted_count"] == 10
        assert second["inserted_count"] == 0

    def test_init_bulk_rejects_bad_size(self, client):
        assert client.post("/api/products/init-bulk", params={"n": 0}).status_code == 422

    def test_list_and_count(self, client):
        listing = client.get("/api/products").json()
        assert listing["count"] == 4
        assert [p["id"] for p in listing["data"]] == [1, 2, 3, 4]
        assert client.get("/api/products/count").json() == {"count": 4}


class TestHealth:

    def test_healthy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "redis": "OK", "primary": "OK (PRIMARY)", "replica": "OK (REPLICA)"
        }

    def test_redis_down_is_503(self, client, fake_redis):
        fake_redis.down = True
        response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["redis"] == "DOWN"

    def test_database_down_is_503(self, client, store):
        store.fail = True
        body = client.get("/health").json()
        assert body["primary"].startswith("DOWN")
        assert body["replica"].startswith("DOWN")


@pytest.mark.parametrize("path", [
    "/api/products/search/full-scan",
    "/api/products/search/prefix",
    "/api/products/search/cached",
])
def test_nul_in_term_matches_nothing(client, path):
    response = client.get(path, params={"term": "Alpha\x00"})
    assert response.status_code == 200
    assert response.json()["count"] == 0
