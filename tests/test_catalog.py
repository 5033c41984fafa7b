"""Tests for the catalog service and its public routes."""

import pytest

from catalog import CatalogService, slugify
from errors import CategoryInUseError, DuplicateSlugError, ValidationError
from schemas import Bundle, Category, CategoryUpdate, Product, ProductUpdate


def test_slugify():
    assert slugify("Welcome Guide Booklet!") == "welcome-guide-booklet"


class TestCategories:
    """Tests for category management."""

    def test_delete_blocked_by_subcategory_then_products(self, db):
        """A category only deletes once it has no subcategories and no products."""
        service = CatalogService(db)
        parent = service.create_category(Category(name="Parent", slug="parent"))
        child = service.create_category(Category(name="Child", slug="child", parent_id=parent))
        product = service.create_product(
            Product(name="Guide", slug="guide", category_id=parent, type="template", price=100)
        )

        with pytest.raises(CategoryInUseError, match="subcategories"):
            service.delete_category(parent)

        service.delete_category(child)
        with pytest.raises(CategoryInUseError, match="products"):
            service.delete_category(parent)

        service.delete_product(product)
        assert service.delete_category(parent) == parent
        assert service.get_category(parent) is None

    def test_duplicate_slug(self, db):
        """Slugs are unique per collection."""
        service = CatalogService(db)
        service.create_category(Category(name="One", slug="same"))

        with pytest.raises(DuplicateSlugError):
            service.create_category(Category(name="Two", slug="same"))

    def test_parent_cannot_be_self_or_descendant(self, db):
        """Re-parenting rejects self references and cycles."""
        service = CatalogService(db)
        top = service.create_category(Category(name="Top", slug="top"))
        mid = service.create_category(Category(name="Mid", slug="mid", parent_id=top))

        with pytest.raises(ValidationError):
            service.update_category(top, CategoryUpdate(parent_id=top))
        with pytest.raises(ValidationError, match="cycle"):
            service.update_category(top, CategoryUpdate(parent_id=mid))

    def test_list_includes_parent_name_and_counts(self, db, catalog):
        """Listed categories carry their parent's name and active product count."""
        service = catalog["service"]
        service.create_category(Category(name="Sub", slug="sub", parent_id=catalog["category_id"]))

        by_slug = {c["slug"]: c for c in service.list_categories()}

        assert by_slug["rentals"]["product_count"] == 2
        assert by_slug["rentals"]["parent_name"] is None
        assert by_slug["sub"]["parent_name"] == "Rentals"
        assert [c["slug"] for c in service.top_level_categories()] == ["rentals"]
        assert [c["slug"] for c in service.child_categories(catalog["category_id"])] == ["sub"]


class TestProducts:
    """Tests for product management."""

    def test_product_requires_existing_category(self, db):
        """Products cannot point at a missing category."""
        with pytest.raises(ValidationError, match="Category not found"):
            CatalogService(db).create_product(
                Product(name="X", slug="x", category_id="64b7f0000000000000000000", type="t", price=1)
            )

    def test_search_and_type_filters(self, catalog):
        """Listing filters by text search and by type."""
        service = catalog["service"]

        assert [p["slug"] for p in service.list_products(search="welcome")] == ["welcome-guide"]
        assert [p["slug"] for p in service.list_products(type="signage")] == ["house-rules-canva"]
        assert len(service.list_products(category_slug="rentals")) == 2
        assert service.product_types() == ["signage", "template"]

    def test_inactive_products_are_hidden(self, catalog):
        """Deactivated products drop out of the listing but stay fetchable."""
        service = catalog["service"]
        service.update_product(catalog["canva_id"], ProductUpdate(is_active=False))

        assert [p["slug"] for p in service.list_products()] == ["welcome-guide"]
        assert service.get_product(catalog["canva_id"])["is_active"] is False

    def test_get_products_keeps_order_and_skips_missing(self, catalog):
        """Batch lookup follows the requested order and ignores unknown ids."""
        service = catalog["service"]
        ids = [catalog["canva_id"], "not-an-id", catalog["guide_id"]]

        assert [p["id"] for p in service.get_products(ids)] == [catalog["canva_id"], catalog["guide_id"]]


class TestBundles:
    """Tests for bundle management."""

    def test_bundle_read_is_priced(self, catalog):
        """Bundles are returned with members, original price and savings."""
        bundle = catalog["service"].get_bundle_by_slug("host-bundle")

        assert bundle["original_price"] == 2098
        assert bundle["savings"] == 598
        assert [p["slug"] for p in bundle["products"]] == ["welcome-guide", "house-rules-canva"]

    def test_bundle_members_must_exist(self, catalog):
        """A bundle cannot reference unknown products."""
        with pytest.raises(ValidationError, match="Unknown products"):
            catalog["service"].create_bundle(
                Bundle(name="Bad", slug="bad", product_ids=["64b7f0000000000000000000"], price=1)
            )

    def test_duplicate_members_are_collapsed(self, catalog):
        """Repeated product ids in a bundle are stored once."""
        bundle = Bundle(name="Dup", slug="dup", product_ids=[catalog["guide_id"]] * 2, price=1)

        assert bundle.product_ids == [catalog["guide_id"]]


class TestSeed:
    """Tests for demo seeding."""

    def test_seed_runs_once(self, db):
        """Seeding fills an empty catalog and is a no-op afterwards."""
        service = CatalogService(db)

        first = service.seed_demo_catalog()
        second = service.seed_demo_catalog()

        assert first["message"] == "Seeded"
        assert first["bundles"] == 2
        assert second["message"] == "Already seeded"
        assert db["product"].count_documents({}) == first["count"]


class TestCatalogRoutes:
    """Tests for the public catalog endpoints."""

    def test_product_by_slug(self, client, catalog):
        """Products are fetched by slug with their category."""
        response = client.get("/api/products/welcome-guide")

        assert response.status_code == 200
        assert response.json()["category"]["slug"] == "rentals"

    def test_unknown_slug_is_404(self, client, catalog):
        """Unknown slugs return the error shape."""
        response = client.get("/api/products/nope")

        assert response.status_code == 404
        assert response.json() == {"error": "Product not found"}

    def test_bundle_listing(self, client, catalog):
        """Bundle listings include derived pricing."""
        bundles = client.get("/api/bundles").json()

        assert bundles[0]["savings"] == 598

    def test_admin_key_required_when_configured(self, client, settings, monkeypatch):
        """Admin routes need the configured key."""
        monkeypatch.setattr(settings, "ADMIN_API_KEY", "secret")
        body = {"name": "New", "slug": "new"}

        assert client.post("/api/admin/categories", json=body).status_code == 401
        response = client.post("/api/admin/categories", json=body, headers={"X-Admin-Key": "secret"})
        assert response.status_code == 200
        assert response.json()["id"]

    def test_delete_category_in_use_is_409(self, client, catalog):
        """Deleting a category with products reports a conflict."""
        response = client.delete(f"/api/admin/categories/{catalog['category_id']}")

        assert response.status_code == 409
        assert response.json() == {"error": "Cannot delete category with products. Move or delete products first."}
