import logging
import threading
from contextlib import contextmanager
from typing import List, Optional, Sequence

import psycopg2
import psycopg2.extras
import psycopg2.pool

from config import Settings
from models import Product, ProductCreate

logger = logging.getLogger(__name__)


class StoreUnavailableError(Exception):
    """La base (primary ou replica) ne répond pas - erreur retriable"""


# Pools créés à la demande: une base down au démarrage ne bloque pas l'API
primary_pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
replica_pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
_settings: Optional[Settings] = None
_pool_lock = threading.Lock()


def configure_pools(settings: Settings):
    """Enregistre la configuration; les connexions sont ouvertes au premier usage"""
    global _settings
    _settings = settings


def _create_pool(host: str, port: int) -> psycopg2.pool.ThreadedConnectionPool:
    return psycopg2.pool.ThreadedConnectionPool(
        minconn=_settings.pool_min_conn,
        maxconn=_settings.pool_max_conn,
        host=host,
        port=port,
        database=_settings.db_name,
        user=_settings.db_user,
        password=_settings.db_password,
    )


def _get_primary_pool() -> psycopg2.pool.ThreadedConnectionPool:
    global primary_pool
    with _pool_lock:
        if primary_pool is None:
            if _settings is None:
                raise StoreUnavailableError("Database pools are not configured")
            primary_pool = _create_pool(_settings.primary_host, _settings.primary_port)
        return primary_pool


def _get_replica_pool() -> psycopg2.pool.ThreadedConnectionPool:
    global replica_pool
    with _pool_lock:
        if replica_pool is None:
            if _settings is None:
                raise StoreUnavailableError("Database pools are not configured")
            replica_pool = _create_pool(_settings.replica_host, _settings.replica_port)
        return replica_pool


@contextmanager
def get_primary_conn():
    """Context manager pour obtenir une connexion au primary via HAProxy"""
    pool = None
    conn = None
    try:
        pool = _get_primary_pool()
        conn = pool.getconn()
        yield conn
        conn.commit()
    except psycopg2.pool.PoolError as e:
        if conn and not conn.closed:
            conn.rollback()
        logger.error(f"[PRIMARY POOL EXHAUSTED] {e}")
        raise StoreUnavailableError(str(e)) from e
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
        if conn and not conn.closed:
            conn.rollback()
        logger.error(f"[PRIMARY DOWN] {e}")
        raise StoreUnavailableError(str(e)) from e
    except Exception as e:
        if conn and not conn.closed:
            conn.rollback()
        logger.error(f"[PRIMARY ERROR] {e}")
        raise
    finally:
        if conn:
            pool.putconn(conn)


@contextmanager
def get_replica_conn():
    """Context manager pour obtenir une connexion à la replica"""
    pool = None
    conn = None
    try:
        pool = _get_replica_pool()
        conn = pool.getconn()
        yield conn
    except psycopg2.pool.PoolError as e:
        logger.error(f"[REPLICA POOL EXHAUSTED] {e}")
        raise StoreUnavailableError(str(e)) from e
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
        logger.error(f"[REPLICA DOWN] {e}")
        raise StoreUnavailableError(str(e)) from e
    except Exception as e:
        logger.error(f"[REPLICA ERROR] {e}")
        raise
    finally:
        if conn:
            pool.putconn(conn)


def close_all_connections():
    """Ferme tous les pools de connexions"""
    global primary_pool, replica_pool
    with _pool_lock:
        for pool in (primary_pool, replica_pool):
            if pool is not None:
                pool.closeall()
        primary_pool = None
        replica_pool = None
    logger.info("[DB] All connection pools closed")


PRODUCT_COLUMNS = "id, name, stock, price"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS products (
    id BIGSERIAL PRIMARY KEY,
    name TEXT NOT NULL CHECK (name <> ''),
    stock INTEGER NOT NULL CHECK (stock >= 0),
    price NUMERIC(12, 2) NOT NULL CHECK (price >= 0)
);
CREATE INDEX IF NOT EXISTS ix_products_name_pattern ON products (name text_pattern_ops);
"""


def escape_like(term: str) -> str:
    """Échappe les métacaractères LIKE pour une correspondance littérale"""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_product(row) -> Product:
    return Product(id=row[0], name=row[1], stock=row[2], price=row[3])


class ProductStore:
    """
    Adaptateur de la base de référence (PostgreSQL).

    Aucune logique de cache ici: lectures sur la replica, écritures sur
    le primary. Une base injoignable lève StoreUnavailableError.
    """

    def ensure_schema(self):
        with get_primary_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
        logger.info("[DB] Schema ready")

    def _read(self, sql: str, params=(), one: bool = False):
        """Lecture sur la replica, fallback vers le primary si elle est injoignable"""
        try:
            return self._execute_read(get_replica_conn, sql, params, one)
        except StoreUnavailableError as e:
            logger.error(f"[REPLICA UNAVAILABLE] {e} - Fallback to primary")
            return self._execute_read(get_primary_conn, sql, params, one)

    @staticmethod
    def _execute_read(conn_factory, sql: str, params, one: bool):
        with conn_factory() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.fetchone() if one else cur.fetchall()

    def get_aggregate_stock(self, name: str) -> int:
        """Stock du produit portant exactement ce nom, 0 s'il n'existe pas"""
        # Un texte PostgreSQL ne contient jamais NUL: aucun produit possible
        if "\x00" in name:
            return 0
        row = self._read(
            "SELECT stock FROM products WHERE name = %s ORDER BY id LIMIT 1",
            (name,), one=True
        )
        return row[0] if row else 0

    def find_by_name_contains(self, term: str) -> List[Product]:
        if "\x00" in term:
            return []
        rows = self._read(
            f"SELECT {PRODUCT_COLUMNS} FROM products WHERE name LIKE %s ESCAPE '\\'",
            ("%" + escape_like(term) + "%",)
        )
        return [_row_to_product(row) for row in rows]

    def find_by_name_prefix(self, term: str) -> List[Product]:
        if "\x00" in term:
            return []
        # 'term%' exploite l'index text_pattern_ops
        rows = self._read(
            f"SELECT {PRODUCT_COLUMNS} FROM products WHERE name LIKE %s ESCAPE '\\'",
            (escape_like(term) + "%",)
        )
        return [_row_to_product(row) for row in rows]

    def seed_if_absent(self, product: ProductCreate) -> bool:
        """
        Insère le produit si aucun produit ne porte ce nom.

        Le verrou advisory (portée transaction) sérialise les seeders
        concurrents: l'existence et l'insertion forment une seule opération.
        """
        with get_primary_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (product.name,))
                cur.execute(
                    """INSERT INTO products (name, stock, price)
                       SELECT %s, %s, %s
                       WHERE NOT EXISTS (SELECT 1 FROM products WHERE name = %s)""",
                    (product.name, product.stock, product.price, product.name)
                )
                inserted = cur.rowcount == 1
        logger.info(f"[SEED] {product.name} - inserted: {inserted}")
        return inserted

    def bulk_seed(self, records: Sequence[ProductCreate], sentinel: str) -> int:
        """Insère un lot de fixtures, sauf si un nom contient déjà le sentinel"""
        with get_primary_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (sentinel,))
                cur.execute(
                    "SELECT EXISTS (SELECT 1 FROM products WHERE name LIKE %s ESCAPE '\\')",
                    ("%" + escape_like(sentinel) + "%",)
                )
                if cur.fetchone()[0]:
                    logger.info(f"[BULK SEED] Fixtures already present ({sentinel})")
                    return 0
                psycopg2.extras.execute_values(
                    cur,
                    "INSERT INTO products (name, stock, price) VALUES %s",
                    [(r.name, r.stock, r.price) for r in records],
                    page_size=1000
                )
        logger.info(f"[BULK SEED] {len(records)} products inserted")
        return len(records)

    def get_all(self) -> List[Product]:
        rows = self._read(f"SELECT {PRODUCT_COLUMNS} FROM products ORDER BY id")
        return [_row_to_product(row) for row in rows]

    def count(self) -> int:
        return self._read("SELECT COUNT(*) FROM products", one=True)[0]

    def check(self, primary: bool = False) -> bool:
        """True si la base répond en mode recovery (replica), False sinon"""
        conn_factory = get_primary_conn if primary else get_replica_conn
        return self._execute_read(conn_factory, "SELECT pg_is_in_recovery()", (), one=True)[0]
