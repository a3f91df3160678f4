from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration de l'inventory API (variables INVENTORY_*)"""

    # PostgreSQL primary (écritures via HAProxy)
    primary_host: str = "localhost"
    primary_port: int = 5439
    # PostgreSQL replica (lectures directes)
    replica_host: str = "localhost"
    replica_port: int = 5433
    db_name: str = "appdb"
    db_user: str = "app"
    db_password: str = "app_pwd"
    pool_min_conn: int = 2
    pool_max_conn: int = 20

    # Redis (cache partagé)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_timeout: float = 2.0

    # TTLs
    local_cache_ttl: float = 5.0
    shared_cache_ttl: int = 300

    # Produit canonique
    canonical_name: str = "福利熊玩偶"
    canonical_stock: int = 1000
    canonical_price: Decimal = Decimal("299")

    # Fixtures de charge
    bulk_seed_sentinel: str = "Test Product"
    bulk_seed_size: int = 10000

    # Latence simulée de la base (0 = désactivée)
    store_delay_seconds: float = 0.0

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="INVENTORY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
