import asyncio
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional, Tuple

from cache import LocalCache, SharedCache
from config import Settings
from database import ProductStore
from models import Product, ProductCreate, SearchStrategy
from search import full_scan, prefix_indexed, search_cache_key

logger = logging.getLogger(__name__)

STOCK_CACHE_KEY = "product_stock"


class StockResult(NamedTuple):
    stock: int
    cache_hit: bool


class SearchResult(NamedTuple):
    products: List[Product]
    cache_hit: bool


def serialize_products(products: List[Product]) -> bytes:
    return json.dumps([p.model_dump(mode="json") for p in products]).encode("utf-8")


def deserialize_products(payload: bytes) -> List[Product]:
    """Lève ValueError/TypeError si le payload est corrompu"""
    return [Product.model_validate(item) for item in json.loads(payload)]


def build_test_products(size: int, sentinel: str) -> List[ProductCreate]:
    return [
        ProductCreate(
            name=f"{sentinel} {i:05d}",
            stock=i % 500,
            price=Decimal(10 + i % 90)
        )
        for i in range(1, size + 1)
    ]


class ProductService:
    """
    Orchestrateur cache-aside:
    1. Lecture du cache (local pour le stock, Redis pour les recherches)
    2. Cache miss → lecture de la base
    3. Mise en cache avec TTL

    Le cache n'est écrit qu'après le retour de la base, dans la tâche
    appelante: une lecture annulée ou en erreur ne remplit jamais le cache.
    Pas d'invalidation à l'écriture, pas de dé-duplication des miss
    concurrents (cache stampede accepté, TTL courts).
    """

    def __init__(self, store: ProductStore, local_cache: LocalCache,
                 shared_cache: SharedCache, settings: Settings):
        self.store = store
        self.local_cache = local_cache
        self.shared_cache = shared_cache
        self.settings = settings
        # Une connexion du pool par thread: au-delà, les appels attendent un worker
        self._store_executor = ThreadPoolExecutor(
            max_workers=settings.pool_max_conn, thread_name_prefix="store"
        )

    async def _run_store(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._store_executor, func, *args)

    def close(self):
        self._store_executor.shutdown(wait=False)

    # ============ Stock (cache local) ============

    async def _get_stock_from_store(self) -> int:
        if self.settings.store_delay_seconds > 0:
            await asyncio.sleep(self.settings.store_delay_seconds)
        return await self._run_store(self.store.get_aggregate_stock, self.settings.canonical_name)

    async def get_stock(self, cached: bool = True) -> StockResult:
        if not cached:
            return StockResult(await self._get_stock_from_store(), False)

        stock, found = self._local_get(STOCK_CACHE_KEY)
        if found:
            return StockResult(stock, True)

        stock = await self._get_stock_from_store()
        self._local_set(STOCK_CACHE_KEY, stock, self.settings.local_cache_ttl)
        return StockResult(stock, False)

    def _local_get(self, key: str):
        try:
            return self.local_cache.get(key)
        except Exception as e:
            logger.error(f"[LOCAL CACHE ERROR] {e} - Fallback to DB")
            return None, False

    def _local_set(self, key: str, value, ttl: float):
        try:
            self.local_cache.set(key, value, ttl)
        except Exception as e:
            logger.error(f"[LOCAL CACHE SET FAILED] {e}")

    # ============ Recherche par nom ============

    async def search_full_scan(self, term: str) -> SearchResult:
        products = await self._run_store(full_scan, self.store, term)
        return SearchResult(products, False)

    async def search_prefix(self, term: str) -> SearchResult:
        products = await self._run_store(prefix_indexed, self.store, term)
        return SearchResult(products, False)

    async def search_prefix_cached(self, term: str) -> SearchResult:
        """
        Recherche par préfixe servie depuis Redis pendant le TTL, sans
        revalidation en base: les données peuvent être périmées jusqu'à
        expiration.
        """
        key = search_cache_key(term)

        payload, found = await self._shared_get(key)
        if found:
            products = self._decode(key, payload)
            if products is not None:
                return SearchResult(products, True)

        products = await self._run_store(prefix_indexed, self.store, term)
        await self._shared_set(key, serialize_products(products), self.settings.shared_cache_ttl)
        return SearchResult(products, False)

    async def search(self, term: str, strategy: SearchStrategy) -> SearchResult:
        if strategy == SearchStrategy.FULL_SCAN:
            return await self.search_full_scan(term)
        if strategy == SearchStrategy.PREFIX:
            return await self.search_prefix(term)
        return await self.search_prefix_cached(term)

    async def _shared_get(self, key: str):
        try:
            return await self.shared_cache.get_serialized(key)
        except Exception as e:
            logger.error(f"[CACHE ERROR] {e} - Fallback to DB")
            return None, False

    async def _shared_set(self, key: str, payload: bytes, ttl: int):
        try:
            await self.shared_cache.set_serialized(key, payload, ttl)
        except Exception as e:
            logger.error(f"[CACHE SET FAILED] {e}")

    def _decode(self, key: str, payload: bytes) -> Optional[List[Product]]:
        try:
            return deserialize_products(payload)
        except (ValueError, TypeError) as e:
            logger.warning(f"[CACHE CORRUPT] {key} - {e} - Recomputing")
            return None

    # ============ Données de test et lecture directe ============

    async def seed_canonical_product(self) -> bool:
        product = ProductCreate(
            name=self.settings.canonical_name,
            stock=self.settings.canonical_stock,
            price=self.settings.canonical_price
        )
        return await self._run_store(self.store.seed_if_absent, product)

    async def seed_test_products(self, size: Optional[int] = None) -> int:
        records = build_test_products(size or self.settings.bulk_seed_size,
                                      self.settings.bulk_seed_sentinel)
        return await self._run_store(self.store.bulk_seed, records, self.settings.bulk_seed_sentinel)

    async def get_all_products(self) -> List[Product]:
        return await self._run_store(self.store.get_all)

    async def count(self) -> int:
        return await self._run_store(self.store.count)

    # ============ Health ============

    async def _node_status(self, primary: bool) -> str:
        expected = "primary" if primary else "replica"
        try:
            in_recovery = await self._run_store(self.store.check, primary)
        except Exception as e:
            return f"DOWN: {e}"
        if in_recovery == (not primary):
            return f"OK ({expected.upper()})"
        # Bascule HAProxy ou replica promue
        return "REPLICA MODE (!)" if primary else "PRIMARY MODE (promoted!)"

    async def health(self) -> Tuple[Dict[str, str], bool]:
        """Etat de Redis, du primary et de la replica; True si tout est OK"""
        health = {
            "redis": "OK" if await self.shared_cache.ping() else "DOWN",
            "primary": await self._node_status(primary=True),
            "replica": await self._node_status(primary=False),
        }
        return health, all(value.startswith("OK") for value in health.values())
