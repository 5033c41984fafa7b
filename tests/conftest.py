"""Shared pytest fixtures for the storefront tests."""

import hashlib
import hmac
import json
import threading
import time

import mongomock
import pytest
from fastapi.testclient import TestClient

from catalog import CatalogService
from config import Config
from database import ensure_indexes, get_db
from errors import AssetFetchError
from main import app
from schemas import Bundle, Category, Product
from storage import AssetStorage, get_storage

WEBHOOK_SECRET = "whsec_test_secret"


class FakeStoredFile:
    def __init__(self, content: bytes, content_type: str = "application/pdf"):
        self.content = content
        self.content_type = content_type
        self.content_length = str(len(content))

    def iter_chunks(self):
        yield self.content


class FakeStorage(AssetStorage):
    """Asset storage that serves files from memory"""

    def __init__(self):
        super().__init__("http://storage.test/assets", "storage-signing-key")
        self.files = {}
        self.fetched = []

    def fetch(self, file_id):
        self.fetched.append(file_id)
        if file_id not in self.files:
            raise AssetFetchError("Failed to fetch file from storage")
        return FakeStoredFile(self.files[file_id])


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header value for the payload"""
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture(autouse=True)
def settings(monkeypatch):
    """Pin configuration so tests never reach real services."""
    monkeypatch.setattr(Config, "STRIPE_API_KEY", "sk_test_123")
    monkeypatch.setattr(Config, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(Config, "RESEND_API_KEY", None)
    monkeypatch.setattr(Config, "RESEND_AUDIENCE_ID", None)
    monkeypatch.setattr(Config, "ADMIN_API_KEY", None)
    monkeypatch.setattr(Config, "APP_URL", "http://shop.test")
    return Config


@pytest.fixture
def db():
    """Fresh in-memory database with the production indexes."""
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def atomic_writes(monkeypatch):
    """Make mongomock's single-document operations atomic, as they are on a real server.

    mongomock holds no lock between the read and the write of
    ``find_one_and_update`` or between an insert and its unique index check.
    """
    lock = threading.RLock()
    collection = mongomock.Collection

    for name in ("find_one", "find_one_and_update", "update_one", "insert_one"):
        original = getattr(collection, name)

        def locked(self, *args, _original=original, **kwargs):
            with lock:
                return _original(self, *args, **kwargs)

        monkeypatch.setattr(collection, name, locked)
    return lock


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def client(db, storage):
    """API client wired to the in-memory database and storage."""
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_storage] = lambda: storage
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def catalog(db, storage):
    """Small catalog: a file product, a link product and a bundle of both."""
    service = CatalogService(db)
    category_id = service.create_category(Category(name="Rentals", slug="rentals"))
    guide_id = service.create_product(
        Product(
            name="Welcome Guide",
            slug="welcome-guide",
            category_id=category_id,
            type="template",
            price=799,
            file_id="file-guide",
        )
    )
    canva_id = service.create_product(
        Product(
            name="House Rules Canva",
            slug="house-rules-canva",
            category_id=category_id,
            type="signage",
            price=1299,
            delivery_url="https://www.canva.com/design/house-rules",
        )
    )
    bundle_id = service.create_bundle(
        Bundle(name="Host Bundle", slug="host-bundle", product_ids=[guide_id, canva_id], price=1500)
    )
    storage.files["file-guide"] = b"%PDF-1.4 welcome guide"
    return {
        "service": service,
        "category_id": category_id,
        "guide_id": guide_id,
        "canva_id": canva_id,
        "bundle_id": bundle_id,
    }


@pytest.fixture
def stripe_sessions(monkeypatch):
    """Capture Stripe checkout sessions instead of calling the API."""
    import stripe
    from types import SimpleNamespace

    created = []

    def fake_create(**kwargs):
        session_id = f"cs_test_{len(created) + 1}"
        created.append({"id": session_id, **kwargs})
        return SimpleNamespace(id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    return created


@pytest.fixture
def post_event(client):
    """Send a signed Stripe event to the webhook endpoint."""

    def _post(event, secret=WEBHOOK_SECRET):
        payload = json.dumps(event)
        return client.post(
            "/webhook",
            content=payload,
            headers={"stripe-signature": sign_payload(payload, secret), "content-type": "application/json"},
        )

    return _post


def completed_event(session_id, metadata, amount_total, email="buyer@example.com"):
    return {
        "id": f"evt_{session_id}",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "amount_total": amount_total,
                "customer_email": email,
                "metadata": metadata,
            }
        },
    }
