import hmac
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from catalog import CatalogService
from checkout import CheckoutService
from config import Config, setup_logging
from database import db, ensure_indexes, get_db
from downloads import DeliveryGateway, DownloadStatus, TokenIssuer, content_disposition, download_filename
from emails import send_receipt, subscribe_newsletter
from errors import AssetFetchError, NotFoundError, OrderNotFoundError, OrderStateError, StoreError
from orders import OrderLedger
from schemas import (
    Bundle,
    BundleUpdate,
    Category,
    CategoryUpdate,
    CheckoutRequest,
    NewsletterRequest,
    OrderStatus,
    Product,
    ProductUpdate,
    RegenerateRequest,
    SeedRequest,
    StatusUpdate,
)
from storage import AssetStorage, get_storage
from webhooks import CompletionHandler, verify_event

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    try:
        ensure_indexes(db)
    except PyMongoError as e:
        logger.warning("Could not ensure indexes: %s", e)
    yield


app = FastAPI(title="Digital Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreError)
async def store_error_handler(_: Request, exc: StoreError):
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse({"error": message}, status_code=422)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_: Request, exc: StarletteHTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))


# Dependencies

def get_catalog(database: Database = Depends(get_db)) -> CatalogService:
    return CatalogService(database)


def get_ledger(database: Database = Depends(get_db)) -> OrderLedger:
    return OrderLedger(database)


def get_issuer(database: Database = Depends(get_db)) -> TokenIssuer:
    return TokenIssuer(database)


def require_admin(x_admin_key: Optional[str] = Header(None)):
    if Config.ADMIN_API_KEY and not (x_admin_key and hmac.compare_digest(x_admin_key, Config.ADMIN_API_KEY)):
        raise HTTPException(status_code=401, detail="Unauthorized")


@app.get("/")
def read_root():
    return {"message": "Digital storefront backend running"}


@app.get("/test")
def test_database(database: Database = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "stripe": "✅ Set" if Config.STRIPE_API_KEY else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["collections"] = database.list_collection_names()[:10]
        response["connection_status"] = "Connected"
        response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:80]}"
    return response


# -------------------------------
# Catalog
# -------------------------------

@app.get("/api/categories")
def list_categories(catalog: CatalogService = Depends(get_catalog)):
    return catalog.list_categories()


@app.get("/api/categories/top")
def top_level_categories(catalog: CatalogService = Depends(get_catalog)):
    return catalog.top_level_categories()


@app.get("/api/categories/{category_id}/children")
def child_categories(category_id: str, catalog: CatalogService = Depends(get_catalog)):
    return catalog.child_categories(category_id)


@app.get("/api/categories/{slug}")
def get_category(slug: str, catalog: CatalogService = Depends(get_catalog)):
    category = catalog.get_category_by_slug(slug)
    if not category:
        raise NotFoundError("Category not found")
    return category


@app.get("/api/products")
def list_products(
    category: Optional[str] = None,
    q: Optional[str] = None,
    type: Optional[str] = None,
    catalog: CatalogService = Depends(get_catalog),
):
    return catalog.list_products(category_slug=category, search=q, type=type)


@app.get("/api/products/featured")
def featured_products(limit: int = 6, catalog: CatalogService = Depends(get_catalog)):
    if limit < 1 or limit > 50:
        limit = 6
    return catalog.featured_products(limit)


@app.get("/api/products/types")
def product_types(catalog: CatalogService = Depends(get_catalog)):
    return catalog.product_types()


@app.get("/api/products/{slug}")
def get_product(slug: str, catalog: CatalogService = Depends(get_catalog)):
    product = catalog.get_product_by_slug(slug)
    if not product:
        raise NotFoundError("Product not found")
    return product


@app.get("/api/bundles")
def list_bundles(catalog: CatalogService = Depends(get_catalog)):
    return catalog.list_bundles()


@app.get("/api/bundles/{slug}")
def get_bundle(slug: str, catalog: CatalogService = Depends(get_catalog)):
    bundle = catalog.get_bundle_by_slug(slug)
    if not bundle:
        raise NotFoundError("Bundle not found")
    return bundle


# -------------------------------
# Checkout, webhook and delivery
# -------------------------------

@app.post("/checkout")
def create_checkout_session(payload: CheckoutRequest, database: Database = Depends(get_db)):
    return CheckoutService(database).create_session(payload)


@app.post("/webhook")
async def stripe_webhook(request: Request, database: Database = Depends(get_db)):
    payload = await request.body()
    event = verify_event(payload, request.headers.get("stripe-signature"))

    try:
        CompletionHandler(database).handle_event(event)
    except Exception:
        # Stripe retries on 5xx; every completion step is idempotent per session
        logger.exception("Error processing webhook event %s", event.get("id"))
        return JSONResponse({"error": "Error processing order"}, status_code=500)

    return {"received": True}


DOWNLOAD_ERROR_STATUS = {
    DownloadStatus.INVALID: 404,
    DownloadStatus.PRODUCT_MISSING: 404,
    DownloadStatus.UNAVAILABLE: 404,
    DownloadStatus.EXPIRED: 410,
    DownloadStatus.LIMIT_REACHED: 403,
}


@app.get("/download/{token}")
def download(
    token: str,
    database: Database = Depends(get_db),
    storage: AssetStorage = Depends(get_storage),
):
    result = DeliveryGateway(database).consume(token)
    if not result.ok:
        return JSONResponse({"error": result.error}, status_code=DOWNLOAD_ERROR_STATUS[result.status])

    product = result.product
    if product.get("file_id"):
        try:
            stored = storage.fetch(product["file_id"])
        except AssetFetchError:
            # the attempt stays spent
            logger.error("Download of product %s failed after token use", product["id"])
            return JSONResponse({"error": "Processing failed, please contact support"}, status_code=500)
        return StreamingResponse(
            stored.iter_chunks(),
            media_type=stored.content_type,
            headers={"Content-Disposition": content_disposition(download_filename(product))},
        )

    return RedirectResponse(product["delivery_url"], status_code=302)


@app.get("/api/downloads/{token}")
def download_status(token: str, database: Database = Depends(get_db)):
    return DeliveryGateway(database).lookup(token).to_dict()


# -------------------------------
# Orders
# -------------------------------

@app.get("/api/orders")
def orders_by_email(email: str, ledger: OrderLedger = Depends(get_ledger)):
    return ledger.get_by_email(email)


@app.get("/api/orders/session/{session_id}")
def order_by_session(session_id: str, ledger: OrderLedger = Depends(get_ledger)):
    order = ledger.get_by_stripe_session(session_id)
    if not order:
        raise OrderNotFoundError("Order not found")
    return order


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, ledger: OrderLedger = Depends(get_ledger)):
    order = ledger.get_by_id(order_id)
    if not order:
        raise OrderNotFoundError("Order not found")
    return order


@app.get("/api/orders/{order_id}/downloads")
def order_downloads(order_id: str, issuer: TokenIssuer = Depends(get_issuer)):
    return issuer.get_by_order(order_id)


# -------------------------------
# Newsletter
# -------------------------------

@app.post("/api/newsletter")
def newsletter_subscribe(payload: NewsletterRequest):
    return subscribe_newsletter(payload.email)


# -------------------------------
# Admin
# -------------------------------

admin = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])


@admin.post("/categories")
def create_category(category: Category, catalog: CatalogService = Depends(get_catalog)):
    return {"id": catalog.create_category(category)}


@admin.patch("/categories/{category_id}")
def update_category(category_id: str, update: CategoryUpdate, catalog: CatalogService = Depends(get_catalog)):
    return catalog.update_category(category_id, update)


@admin.delete("/categories/{category_id}")
def delete_category(category_id: str, catalog: CatalogService = Depends(get_catalog)):
    return {"id": catalog.delete_category(category_id)}


@admin.post("/products")
def create_product(product: Product, catalog: CatalogService = Depends(get_catalog)):
    return {"id": catalog.create_product(product)}


@admin.patch("/products/{product_id}")
def update_product(product_id: str, update: ProductUpdate, catalog: CatalogService = Depends(get_catalog)):
    return catalog.update_product(product_id, update)


@admin.delete("/products/{product_id}")
def delete_product(product_id: str, catalog: CatalogService = Depends(get_catalog)):
    return {"id": catalog.delete_product(product_id)}


@admin.post("/bundles")
def create_bundle(bundle: Bundle, catalog: CatalogService = Depends(get_catalog)):
    return {"id": catalog.create_bundle(bundle)}


@admin.patch("/bundles/{bundle_id}")
def update_bundle(bundle_id: str, update: BundleUpdate, catalog: CatalogService = Depends(get_catalog)):
    return catalog.update_bundle(bundle_id, update)


@admin.delete("/bundles/{bundle_id}")
def delete_bundle(bundle_id: str, catalog: CatalogService = Depends(get_catalog)):
    return {"id": catalog.delete_bundle(bundle_id)}


@admin.get("/orders")
def list_orders(ledger: OrderLedger = Depends(get_ledger)):
    return ledger.list_all()


@admin.patch("/orders/{order_id}")
def update_order_status(order_id: str, update: StatusUpdate, ledger: OrderLedger = Depends(get_ledger)):
    return ledger.update_status(order_id, update.status)


@admin.post("/orders/{order_id}/resend")
def resend_receipt(
    order_id: str,
    ledger: OrderLedger = Depends(get_ledger),
    issuer: TokenIssuer = Depends(get_issuer),
):
    order = ledger.get_by_id(order_id)
    if not order:
        raise OrderNotFoundError("Order not found")
    if order["status"] != OrderStatus.COMPLETED.value:
        raise OrderStateError("Only completed orders have downloads")

    issuer.issue_for_order(order)
    tokens = issuer.get_by_order(order_id)
    sent = send_receipt(order["email"], order_id, tokens)
    return {"sent": sent, "tokens": len(tokens)}


@admin.post("/downloads/regenerate")
def regenerate_token(payload: RegenerateRequest, issuer: TokenIssuer = Depends(get_issuer)):
    return issuer.regenerate(payload.order_id, payload.product_id)


@admin.post("/uploads")
def create_upload_url(storage: AssetStorage = Depends(get_storage)):
    file_id, url = storage.generate_upload_url()
    return {"file_id": file_id, "upload_url": url}


app.include_router(admin)


@app.post("/api/seed", dependencies=[Depends(require_admin)])
def seed_catalog(payload: SeedRequest, catalog: CatalogService = Depends(get_catalog)):
    if not payload.with_demo:
        return {"message": "Nothing to seed", "count": 0}
    return catalog.seed_demo_catalog()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.PORT)
