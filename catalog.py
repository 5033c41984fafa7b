import logging
import re
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, serialize, to_object_id, utcnow
from errors import CategoryInUseError, DuplicateSlugError, NotFoundError, ValidationError
from pricing import price_bundle, resolve_bundle
from schemas import Bundle, BundleUpdate, Category, CategoryUpdate, Product, ProductUpdate

logger = logging.getLogger(__name__)


def slugify(text: str) -> str:
    text = re.sub(r"[^\w\s-]", "", text.lower())
    return re.sub(r"\s+", "-", text.strip())


class CatalogService:
    """Categories, products and bundles"""

    def __init__(self, db: Database):
        self.db = db

    # -------------------------------
    # Shared helpers
    # -------------------------------

    def _insert(self, collection_name: str, model) -> str:
        try:
            return create_document(self.db, collection_name, model)
        except DuplicateKeyError:
            raise DuplicateSlugError(f"A {collection_name} with slug '{model.slug}' already exists")

    def _update(self, collection_name: str, item_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        _id = to_object_id(item_id)
        if _id is None or not self.db[collection_name].find_one({"_id": _id}, {"_id": 1}):
            raise NotFoundError(f"{collection_name.capitalize()} not found")
        if changes:
            changes["updated_at"] = utcnow()
            try:
                self.db[collection_name].update_one({"_id": _id}, {"$set": changes})
            except DuplicateKeyError:
                raise DuplicateSlugError(f"A {collection_name} with slug '{changes.get('slug')}' already exists")
        return serialize(self.db[collection_name].find_one({"_id": _id}))

    def _get(self, collection_name: str, item_id: str) -> Optional[Dict[str, Any]]:
        _id = to_object_id(item_id)
        if _id is None:
            return None
        return serialize(self.db[collection_name].find_one({"_id": _id}))

    def _delete(self, collection_name: str, item_id: str) -> str:
        _id = to_object_id(item_id)
        if _id is None or self.db[collection_name].delete_one({"_id": _id}).deleted_count == 0:
            raise NotFoundError(f"{collection_name.capitalize()} not found")
        return item_id

    # -------------------------------
    # Categories
    # -------------------------------

    def _active_product_count(self, category_id: str) -> int:
        return self.db["product"].count_documents({"category_id": category_id, "is_active": True})

    def _with_counts(self, categories: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        for category in categories:
            category["product_count"] = self._active_product_count(category["id"])
        return categories

    def list_categories(self) -> List[Dict[str, Any]]:
        categories = [serialize(doc) for doc in self.db["category"].find()]
        names = {c["id"]: c["name"] for c in categories}
        for category in categories:
            category["parent_name"] = names.get(category.get("parent_id"))
        return self._with_counts(categories)

    def top_level_categories(self) -> List[Dict[str, Any]]:
        return self._with_counts([serialize(doc) for doc in self.db["category"].find({"parent_id": None})])

    def child_categories(self, parent_id: str) -> List[Dict[str, Any]]:
        return self._with_counts([serialize(doc) for doc in self.db["category"].find({"parent_id": parent_id})])

    def get_category(self, category_id: str) -> Optional[Dict[str, Any]]:
        return self._get("category", category_id)

    def get_category_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        return serialize(self.db["category"].find_one({"slug": slug}))

    def _check_parent(self, category_id: Optional[str], parent_id: Optional[str]) -> None:
        if parent_id is None:
            return
        if parent_id == category_id:
            raise ValidationError("A category cannot be its own parent")
        current = self.get_category(parent_id)
        if current is None:
            raise ValidationError("Parent category not found")
        # walk up from the new parent; meeting ourselves means a cycle
        while current is not None and category_id is not None:
            if current["id"] == category_id:
                raise ValidationError("Category parent would create a cycle")
            current = self.get_category(current["parent_id"]) if current.get("parent_id") else None

    def create_category(self, category: Category) -> str:
        self._check_parent(None, category.parent_id)
        return self._insert("category", category)

    def update_category(self, category_id: str, update: CategoryUpdate) -> Dict[str, Any]:
        changes = update.model_dump(exclude_unset=True)
        if "parent_id" in changes:
            self._check_parent(category_id, changes["parent_id"])
        return self._update("category", category_id, changes)

    def delete_category(self, category_id: str) -> str:
        if self.db["category"].find_one({"parent_id": category_id}, {"_id": 1}):
            raise CategoryInUseError("Cannot delete category with subcategories. Delete subcategories first.")
        if self.db["product"].find_one({"category_id": category_id}, {"_id": 1}):
            raise CategoryInUseError("Cannot delete category with products. Move or delete products first.")
        return self._delete("category", category_id)

    # -------------------------------
    # Products
    # -------------------------------

    def _with_category(self, product: Dict[str, Any]) -> Dict[str, Any]:
        product["category"] = self.get_category(product.get("category_id"))
        return product

    def list_products(
        self,
        category_slug: Optional[str] = None,
        search: Optional[str] = None,
        type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        filter_query: Dict[str, Any] = {"is_active": True}
        if category_slug:
            category = self.get_category_by_slug(category_slug)
            if category:
                filter_query["category_id"] = category["id"]
        if search:
            pattern = re.escape(search)
            filter_query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        if type:
            filter_query["type"] = type
        return [self._with_category(serialize(doc)) for doc in self.db["product"].find(filter_query)]

    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        return self._get("product", product_id)

    def get_products(self, product_ids: List[str]) -> List[Dict[str, Any]]:
        """Fetch products in the given order, skipping ids that no longer resolve"""
        oids = [oid for oid in (to_object_id(pid) for pid in product_ids) if oid is not None]
        found = {str(doc["_id"]): serialize(doc) for doc in self.db["product"].find({"_id": {"$in": oids}})}
        return [found[pid] for pid in product_ids if pid in found]

    def get_product_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        product = serialize(self.db["product"].find_one({"slug": slug}))
        return self._with_category(product) if product else None

    def featured_products(self, limit: int = 6) -> List[Dict[str, Any]]:
        cursor = self.db["product"].find({"is_active": True}).sort("is_featured", DESCENDING).limit(limit)
        return [self._with_category(serialize(doc)) for doc in cursor]

    def product_types(self) -> List[str]:
        return sorted({doc["type"] for doc in self.db["product"].find({}, {"type": 1}) if doc.get("type")})

    def create_product(self, product: Product) -> str:
        if self.get_category(product.category_id) is None:
            raise ValidationError("Category not found")
        return self._insert("product", product)

    def update_product(self, product_id: str, update: ProductUpdate) -> Dict[str, Any]:
        changes = update.model_dump(exclude_unset=True)
        if changes.get("category_id") and self.get_category(changes["category_id"]) is None:
            raise ValidationError("Category not found")
        return self._update("product", product_id, changes)

    def delete_product(self, product_id: str) -> str:
        return self._delete("product", product_id)

    # -------------------------------
    # Bundles
    # -------------------------------

    def _check_members(self, product_ids: List[str]) -> None:
        missing = set(product_ids) - {p["id"] for p in self.get_products(product_ids)}
        if missing:
            raise ValidationError(f"Unknown products in bundle: {', '.join(sorted(missing))}")

    def list_bundles(self) -> List[Dict[str, Any]]:
        bundles = [serialize(doc) for doc in self.db["bundle"].find({"is_active": True})]
        return [resolve_bundle(self, b) for b in bundles]

    def get_bundle(self, bundle_id: str) -> Optional[Dict[str, Any]]:
        return self._get("bundle", bundle_id)

    def get_bundle_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        bundle = serialize(self.db["bundle"].find_one({"slug": slug}))
        if not bundle:
            return None
        products = [self._with_category(p) for p in self.get_products(bundle.get("product_ids", []))]
        return price_bundle(bundle, products)

    def create_bundle(self, bundle: Bundle) -> str:
        self._check_members(bundle.product_ids)
        return self._insert("bundle", bundle)

    def update_bundle(self, bundle_id: str, update: BundleUpdate) -> Dict[str, Any]:
        changes = update.model_dump(exclude_unset=True)
        if changes.get("product_ids") is not None:
            self._check_members(changes["product_ids"])
        return self._update("bundle", bundle_id, changes)

    def delete_bundle(self, bundle_id: str) -> str:
        return self._delete("bundle", bundle_id)

    # -------------------------------
    # Demo data
    # -------------------------------

    def seed_demo_catalog(self) -> Dict[str, Any]:
        count = self.db["product"].count_documents({})
        if count > 0:
            return {"message": "Already seeded", "count": count}

        categories = {
            name: self.create_category(Category(name=name, slug=slugify(name), description=description))
            for name, description in DEMO_CATEGORIES
        }

        product_ids: Dict[str, List[str]] = {name: [] for name in categories}
        for name, category, type_, price in DEMO_PRODUCTS:
            pid = self.create_product(
                Product(
                    name=name,
                    slug=slugify(name),
                    category_id=categories[category],
                    type=type_,
                    price=price,
                )
            )
            product_ids[category].append(pid)

        bundles = 0
        for name, category, discount_percent in DEMO_BUNDLES:
            members = self.get_products(product_ids[category])
            if not members:
                continue
            original_price = sum(p["price"] for p in members)
            self.create_bundle(
                Bundle(
                    name=name,
                    slug=slugify(name),
                    product_ids=[p["id"] for p in members],
                    price=round(original_price * (1 - discount_percent / 100)),
                    discount_percent=discount_percent,
                )
            )
            bundles += 1

        logger.info("Seeded demo catalog: %d products, %d bundles", len(DEMO_PRODUCTS), bundles)
        return {"message": "Seeded", "count": len(DEMO_PRODUCTS), "bundles": bundles}


DEMO_CATEGORIES = [
    ("Short-Term Rentals", "Guest-facing templates for rental hosts."),
    ("Landlord Tools", "Trackers and agreements for landlords."),
]

DEMO_PRODUCTS = [
    ("Welcome Guide Booklet", "Short-Term Rentals", "template", 1499),
    ("Check-In Instructions", "Short-Term Rentals", "template", 899),
    ("WiFi Password Display", "Short-Term Rentals", "signage", 399),
    ("Rental Agreement", "Landlord Tools", "template", 1499),
    ("Rent Collection Tracker", "Landlord Tools", "tracker", 999),
]

DEMO_BUNDLES = [
    ("Host Starter Bundle", "Short-Term Rentals", 35),
    ("Landlord Toolkit", "Landlord Tools", 30),
]
