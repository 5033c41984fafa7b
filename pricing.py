"""Bundle pricing.

A bundle stores only its discounted price; what the products would cost on
their own, and how much the bundle saves, are derived whenever it is read.
Member products that no longer exist are left out of the sum.
"""

from typing import Any, Dict, Iterable, List


def price_bundle(bundle: Dict[str, Any], products: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    products = [p for p in products if p]
    original_price = sum(p.get("price", 0) for p in products)
    return {
        **bundle,
        "products": products,
        "original_price": original_price,
        "savings": original_price - bundle.get("price", 0),
    }


def resolve_bundle(catalog, bundle: Dict[str, Any]) -> Dict[str, Any]:
    """Fetch a bundle's member products from the catalog and price it"""
    return price_bundle(bundle, catalog.get_products(bundle.get("product_ids", [])))


def expand_bundle_product_ids(bundle: Dict[str, Any], existing_ids: Iterable[str]) -> List[str]:
    existing = set(existing_ids)
    return [pid for pid in bundle.get("product_ids", []) if pid in existing]
