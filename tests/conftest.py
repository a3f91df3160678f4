"""
Fixtures partagées: base en mémoire, faux Redis et horloge contrôlable.
"""
from decimal import Decimal
from typing import List

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from cache import LocalCache, SharedCache
from config import Settings
from database import StoreUnavailableError
from models import Product, ProductCreate
from service import ProductService


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class InMemoryProductStore:
    """Double de ProductStore: mêmes règles de correspondance, appels comptés"""

    def __init__(self):
        self.products: List[Product] = []
        self.calls = {"aggregate": 0, "contains": 0, "prefix": 0}
        self.fail = False
        self.on_query = None

    def add(self, name: str, stock: int = 0, price: str = "1") -> Product:
        product = Product(id=len(self.products) + 1, name=name, stock=stock, price=Decimal(price))
        self.products.append(product)
        return product

    def set_stock(self, name: str, stock: int):
        for i, p in enumerate(self.products):
            if p.name == name:
                self.products[i] = p.model_copy(update={"stock": stock})

    def _query(self, kind: str):
        self.calls[kind] += 1
        if self.on_query:
            self.on_query()
        if self.fail:
            raise StoreUnavailableError("connection refused")

    def get_aggregate_stock(self, name: str) -> int:
        self._query("aggregate")
        matches = [p for p in self.products if p.name == name]
        return matches[0].stock if matches else 0

    def find_by_name_contains(self, term: str) -> List[Product]:
        self._query("contains")
        return [p for p in self.products if term in p.name]

    def find_by_name_prefix(self, term: str) -> List[Product]:
        self._query("prefix")
        return [p for p in self.products if p.name.startswith(term)]

    def seed_if_absent(self, product: ProductCreate) -> bool:
        if self.fail:
            raise StoreUnavailableError("connection refused")
        if any(p.name == product.name for p in self.products):
            return False
        self.add(product.name, product.stock, str(product.price))
        return True

    def bulk_seed(self, records, sentinel: str) -> int:
        if any(sentinel in p.name for p in self.products):
            return 0
        for r in records:
            self.add(r.name, r.stock, str(r.price))
        return len(records)

    def get_all(self) -> List[Product]:
        return list(self.products)

    def count(self) -> int:
        return len(self.products)

    def check(self, primary: bool = False) -> bool:
        if self.fail:
            raise StoreUnavailableError("connection refused")
        return not primary


class FakeRedis:
    """Sous-ensemble async de redis.asyncio.Redis utilisé par SharedCache"""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data = {}
        self.down = False
        self.set_calls = 0

    def _check(self):
        if self.down:
            raise RedisConnectionError("Connection refused")

    async def get(self, key):
        self._check()
        entry = self.data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self.clock() >= expires_at:
            del self.data[key]
            return None
        return value

    async def setex(self, key, ttl, value):
        self._check()
        self.set_calls += 1
        self.data[key] = (value, self.clock() + ttl)
        return True

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        canonical_name="Alpha Toy",
        canonical_stock=42,
        canonical_price=Decimal("9.99"),
        bulk_seed_sentinel="Test Product",
        bulk_seed_size=50,
    )


@pytest.fixture
def store():
    store = InMemoryProductStore()
    store.add("Alpha Toy", 42, "9.99")
    store.add("Alpha Robot", 5, "19.50")
    store.add("Beta Alpha Kit", 3, "4.00")
    store.add("Gamma Puzzle", 0, "12.00")
    return store


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def local_cache(clock):
    return LocalCache(clock=clock)


@pytest.fixture
def shared_cache(fake_redis):
    return SharedCache(fake_redis)


@pytest.fixture
def service(store, local_cache, shared_cache, settings):
    return ProductService(store, local_cache, shared_cache, settings)
