# --- START OF FILE catalog.py ---

"""
Product Catalog
Static coin packages sold for Telegram Stars. Mirrors the mini app's storefront.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, Optional


@dataclass(frozen=True)
class Product:
    id: str
    price: int      # stars (XTR)
    quantity: int   # void coins delivered
    title: str
    description: str

    def __post_init__(self):
        if not self.id:
            raise ValueError("Product id must not be empty")
        if not isinstance(self.price, int) or self.price <= 0:
            raise ValueError(f"Product {self.id}: price must be a positive integer, got {self.price!r}")
        if not isinstance(self.quantity, int) or self.quantity <= 0:
            raise ValueError(f"Product {self.id}: quantity must be a positive integer, got {self.quantity!r}")


class ProductCatalog:
    """Read-only product lookup. Built once at startup."""

    def __init__(self, products: Iterable[Product]):
        by_id: Dict[str, Product] = {}
        for product in products:
            if product.id in by_id:
                raise ValueError(f"Duplicate product id in catalog: {product.id}")
            by_id[product.id] = product
        self._products = MappingProxyType(by_id)

    def get(self, product_id) -> Optional[Product]:
        if not isinstance(product_id, str):
            return None
        return self._products.get(product_id)

    def __contains__(self, product_id) -> bool:
        return self.get(product_id) is not None

    def __iter__(self):
        return iter(self._products.values())

    def __len__(self) -> int:
        return len(self._products)

    def ids(self) -> list:
        return list(self._products.keys())


def _coin_package(product_id: str, stars: int, title: str) -> Product:
    coins = stars * 10
    return Product(id=product_id, price=stars, quantity=coins, title=title, description=f"{coins} Void Coins")


# 13 packages, 1 star = 10 coins
PRODUCTS = (
    _coin_package("package_tiny", 1, "Tiny Package"),
    _coin_package("package_mini", 25, "Mini Package"),
    _coin_package("package_small", 50, "Small Package"),
    _coin_package("package_bit", 75, "Bit Package"),
    _coin_package("package_medium", 100, "Medium Package"),
    _coin_package("package_biggermedium", 250, "Bigger Medium Package"),
    _coin_package("package_moderate", 500, "Moderate Package"),
    _coin_package("package_large", 750, "Large Package"),
    _coin_package("package_superlarge", 1000, "Super Large Package"),
    _coin_package("package_huge", 2500, "Huge Package"),
    _coin_package("package_xlsize", 5000, "XL Package"),
    _coin_package("package_mega", 7500, "Mega Package"),
    _coin_package("package_giant", 10000, "Giant Package"),
)


def load_catalog() -> ProductCatalog:
    return ProductCatalog(PRODUCTS)

# --- END OF FILE catalog.py ---
