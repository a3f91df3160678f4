import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import psycopg2
from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse

from cache import LocalCache, SharedCache, create_redis_client
from config import get_settings
from database import (
    ProductStore, StoreUnavailableError, close_all_connections, configure_pools
)
from models import (
    BulkSeedResponse, CountResponse, HealthStatus, ProductListResponse,
    SearchResponse, SearchStrategy, SeedResponse, StockResponse
)
from service import ProductService

settings = get_settings()

# Configuration logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_pools(settings)
    store = ProductStore()
    try:
        store.ensure_schema()
    except StoreUnavailableError as e:
        logger.error(f"[DB DOWN] Schema not checked at startup: {e}")

    shared_cache = SharedCache(create_redis_client(settings))
    app.state.service = ProductService(store, LocalCache(), shared_cache, settings)
    logger.info(
        f"Local TTL {settings.local_cache_ttl}s, shared TTL {settings.shared_cache_ttl}s"
    )

    yield

    # Fermeture propre des connexions
    logger.info("Shutting down...")
    app.state.service.close()
    await shared_cache.close()
    close_all_connections()


app = FastAPI(title="Inventory API - PostgreSQL + Redis", lifespan=lifespan)
router = APIRouter(prefix="/api/products")


def get_service(request: Request) -> ProductService:
    return request.app.state.service


def elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    logger.error(f"[STORE DOWN] {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Database unavailable"},
        headers={"Retry-After": "1"}
    )


@app.exception_handler(psycopg2.Error)
async def database_error_handler(request: Request, exc: psycopg2.Error):
    logger.error(f"[DB ERROR] {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc)}
    )


# ============ Stock : cache local 5s ============

@router.get("/stock", response_model=StockResponse)
async def get_stock(service: ProductService = Depends(get_service)):
    """Stock du produit canonique (cache-aside sur le cache local)"""
    start = time.perf_counter()
    result = await service.get_stock(cached=True)
    return StockResponse(stock=result.stock, cache_hit=result.cache_hit, elapsed_ms=elapsed_ms(start))


@router.get("/stock/no-cache", response_model=StockResponse)
async def get_stock_no_cache(service: ProductService = Depends(get_service)):
    """Stock lu directement en base, sans lecture ni écriture du cache"""
    start = time.perf_counter()
    result = await service.get_stock(cached=False)
    return StockResponse(stock=result.stock, cache_hit=result.cache_hit, elapsed_ms=elapsed_ms(start))


# ============ Recherche par nom ============

async def _search(service: ProductService, term: str, strategy: SearchStrategy) -> SearchResponse:
    start = time.perf_counter()
    result = await service.search(term, strategy)
    return SearchResponse(
        strategy=strategy,
        term=term,
        count=len(result.products),
        cache_hit=result.cache_hit,
        elapsed_ms=elapsed_ms(start),
        data=result.products
    )


@router.get("/search", response_model=SearchResponse)
async def search_products(
    term: str = "",
    strategy: SearchStrategy = SearchStrategy.PREFIX_CACHED,
    service: ProductService = Depends(get_service)
):
    return await _search(service, term, strategy)


@router.get("/search/full-scan", response_model=SearchResponse)
async def search_full_scan(term: str = "", service: ProductService = Depends(get_service)):
    """LIKE '%term%' : parcours complet, O(n)"""
    return await _search(service, term, SearchStrategy.FULL_SCAN)


@router.get("/search/prefix", response_model=SearchResponse)
async def search_prefix(term: str = "", service: ProductService = Depends(get_service)):
    """LIKE 'term%' : index sur name, O(log n)"""
    return await _search(service, term, SearchStrategy.PREFIX)


@router.get("/search/cached", response_model=SearchResponse)
async def search_cached(term: str = "", service: ProductService = Depends(get_service)):
    """Préfixe + cache Redis 5 min"""
    return await _search(service, term, SearchStrategy.PREFIX_CACHED)


# ============ Données de test ============

@router.post("/init", response_model=SeedResponse)
async def init_test_data(service: ProductService = Depends(get_service)):
    inserted = await service.seed_canonical_product()
    message = "Test data created" if inserted else "Test data already exists"
    return SeedResponse(inserted=inserted, message=message)


@router.post("/init-bulk", response_model=BulkSeedResponse)
async def init_bulk_data(
    n: Optional[int] = Query(None, ge=1, le=100000),
    service: ProductService = Depends(get_service)
):
    """Fixtures pour les tests de charge (no-op si déjà présentes)"""
    inserted_count = await service.seed_test_products(n)
    message = "Load-test products created" if inserted_count else "Load-test products already exist"
    return BulkSeedResponse(inserted_count=inserted_count, message=message)


# ============ Lecture directe (sans cache) ============

@router.get("", response_model=ProductListResponse)
async def list_products(service: ProductService = Depends(get_service)):
    products = await service.get_all_products()
    return ProductListResponse(count=len(products), data=products)


@router.get("/count", response_model=CountResponse)
async def count_products(service: ProductService = Depends(get_service)):
    return CountResponse(count=await service.count())


app.include_router(router)


# ============ Health Check ============

@app.get("/health", response_model=HealthStatus)
async def health_check(service: ProductService = Depends(get_service)):
    """Vérifie l'état de tous les composants"""
    health, is_healthy = await service.health()
    status_code = status.HTTP_200_OK if is_healthy else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=health)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
