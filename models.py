from decimal import Decimal
from enum import Enum
from typing import List

from pydantic import BaseModel, Field


class SearchStrategy(str, Enum):
    FULL_SCAN = "full_scan"
    PREFIX = "prefix"
    PREFIX_CACHED = "prefix_cached"


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    stock: int = Field(..., ge=0)
    price: Decimal = Field(..., ge=0)


class Product(BaseModel):
    id: int
    name: str = Field(..., min_length=1)
    stock: int = Field(..., ge=0)
    price: Decimal = Field(..., ge=0)


class StockResponse(BaseModel):
    stock: int
    cache_hit: bool
    elapsed_ms: float


class SearchResponse(BaseModel):
    strategy: SearchStrategy
    term: str
    count: int
    cache_hit: bool
    elapsed_ms: float
    data: List[Product]


class ProductListResponse(BaseModel):
    count: int
    data: List[Product]


class CountResponse(BaseModel):
    count: int


class SeedResponse(BaseModel):
    inserted: bool
    message: str


class BulkSeedResponse(BaseModel):
    inserted_count: int
    message: str


class HealthStatus(BaseModel):
    redis: str
    primary: str
    replica: str
