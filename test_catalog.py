import pytest

from catalog import Product, ProductCatalog, load_catalog


def test_catalog_has_all_packages():
    catalog = load_catalog()
    assert len(catalog) == 13
    assert catalog.ids()[0] == "package_tiny"
    assert catalog.get("package_giant").price == 10000


def test_packages_give_ten_coins_per_star():
    for product in load_catalog():
        assert product.quantity == product.price * 10
        assert product.description == f"{product.quantity} Void Coins"


def test_lookup_misses():
    catalog = load_catalog()
    assert catalog.get("package_free") is None
    assert catalog.get(None) is None
    assert catalog.get(25) is None
    assert "package_free" not in catalog


@pytest.mark.parametrize("kwargs", [
    {'id': "", 'price': 1, 'quantity': 10},
    {'id': "p", 'price': 0, 'quantity': 10},
    {'id': "p", 'price': 1, 'quantity': -5},
    {'id': "p", 'price': 1.5, 'quantity': 10},
])
def test_invalid_products_are_rejected(kwargs):
    with pytest.raises(ValueError):
        Product(title="T", description="D", **kwargs)


def test_duplicate_ids_are_rejected():
    product = Product(id="p", price=1, quantity=10, title="T", description="D")
    with pytest.raises(ValueError):
        ProductCatalog([product, product])
