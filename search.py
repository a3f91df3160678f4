"""
Stratégies de recherche par nom.

Même résultat pour un terme qui est un vrai préfixe, coût différent:
- full_scan: sous-chaîne n'importe où, O(n) sur toute la table
- prefix_indexed: début du nom, O(log n) via l'index text_pattern_ops
La variante avec cache Redis est dans service.ProductService.
"""
from typing import List

from database import ProductStore
from models import Product

SEARCH_KEY_PREFIX = "products_search_"


def search_cache_key(term: str) -> str:
    return SEARCH_KEY_PREFIX + term


def full_scan(store: ProductStore, term: str) -> List[Product]:
    """Produits dont le nom contient term; '' renvoie tout le catalogue"""
    return store.find_by_name_contains(term)


def prefix_indexed(store: ProductStore, term: str) -> List[Product]:
    """Produits dont le nom commence par term; '' renvoie tout le catalogue"""
    return store.find_by_name_prefix(term)
